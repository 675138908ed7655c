"""CLI entry point for Site Tracker."""

from __future__ import annotations

import functools
import json
import logging
import sys
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError as SchemaError

from site_tracker.core import TrackerCore
from site_tracker.errors import TrackerError
from site_tracker.models import NotificationIntent, SiteLimit, local_date, now_ms
from site_tracker.signals import dispatch, parse_signal
from site_tracker.tracker import DEFAULT_FLUSH_INTERVAL_MS
from site_tracker.transfer import export_data, import_data

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "site-tracker" / "tracker.db"

db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    envvar="SITE_TRACKER_DB",
    show_envvar=True,
    help="Path to SQLite database",
)


def format_duration(seconds: int) -> str:
    """Format seconds as 'Xh Ym', 'Ym', or '<1m'.

    Args:
        seconds: Duration in seconds.

    Returns:
        Formatted duration string.
    """
    if seconds < 60:
        return "<1m" if seconds > 0 else "0m"
    total_minutes = seconds // 60
    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours > 0:
        return f"{hours}h {minutes:2d}m"
    return f"{minutes}m"


def make_progress_bar(value: int, max_value: int, width: int = 16) -> str:
    """Create ASCII progress bar.

    Args:
        value: Current value.
        max_value: Maximum value (100%).
        width: Total width of bar (default: 16).

    Returns:
        Progress bar string like '████████░░░░░░░░'.
    """
    if max_value == 0 or value == 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)


def parse_setting_value(raw: str) -> Any:
    """Interpret a command-line value as JSON, falling back to a plain string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def echo_notification(intent: NotificationIntent) -> None:
    click.echo(f"Notification: {intent.site_key}: {intent.message}", err=True)


def _require_db(db: Path) -> None:
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)


def _fail(error: TrackerError) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def reports_errors(command: Callable[..., None]) -> Callable[..., None]:
    """Turn a TrackerError raised anywhere in a command into 'Error: ...' and exit 1."""

    @functools.wraps(command)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            command(*args, **kwargs)
        except TrackerError as e:
            _fail(e)

    return wrapper


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
def main(verbose: bool) -> None:
    """Site Tracker CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("track")
@db_option
@click.option(
    "--flush-interval",
    type=int,
    default=DEFAULT_FLUSH_INTERVAL_MS // 1000,
    show_default=True,
    help="Seconds between partial flushes of a long session",
)
@reports_errors
def track_command(db: Path, flush_interval: int) -> None:
    """Replay activation/focus/tick/removal signals from stdin (JSONL).

    Each line is one signal object with a "type" of activation, focus, tick
    or removal and an epoch-millisecond "timestamp". Any session still open
    at the end of input is closed at the last signal's timestamp.

    Example:
        echo '{"type":"activation","siteKeyOrUrl":"https://a.com/","timestamp":0}' | site-tracker track
    """
    processed = 0
    recorded = 0
    has_input = False
    last_timestamp: int | None = None

    with TrackerCore.open(
        db, notify=echo_notification, flush_interval_ms=flush_interval * 1000
    ) as core:
        for line_number, line in enumerate(sys.stdin, 1):
            stripped = line.strip()
            if not stripped:
                continue

            has_input = True

            try:
                signal = parse_signal(json.loads(stripped))
            except json.JSONDecodeError as e:
                click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
                continue
            except SchemaError as e:
                click.echo(f"Warning: line {line_number}: invalid signal: {e}", err=True)
                continue

            processed += 1
            last_timestamp = signal.timestamp
            if dispatch(core.tracker, signal) is not None:
                recorded += 1

        if last_timestamp is not None and core.tracker.on_focus_lost(last_timestamp) is not None:
            recorded += 1

    click.echo(f"Processed {processed} signals, recorded {recorded} intervals")

    if has_input and processed == 0:
        sys.exit(1)


@main.command("status")
@db_option
@reports_errors
def status_command(db: Path) -> None:
    """Show stored record counts and today's total."""
    _require_db(db)

    today = local_date(now_ms())
    with TrackerCore.open(db) as core:
        aggregates = core.aggregates.list_all()
        interval_count = len(core.intervals.list_all())
        limits = core.limits.list_all()

    click.echo(f"Database: {db}")
    click.echo()
    click.echo(f"Sites tracked: {len(aggregates)}")
    click.echo(f"Intervals: {interval_count}")
    click.echo(f"Site limits: {len(limits)} ({sum(1 for lim in limits if lim.blocked)} blocked)")
    today_seconds = sum(a.bucket(today).seconds for a in aggregates)
    click.echo(f"Today: {format_duration(today_seconds)}")


@main.command("report")
@db_option
@click.option("--day", "day_date", default=None, help="Day to report (YYYY-MM-DD, default: today)")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@reports_errors
def report_command(db: Path, day_date: str | None, output_json: bool) -> None:
    """Show time per site for one day."""
    _require_db(db)

    if day_date is None:
        day_date = local_date(now_ms())
    else:
        try:
            datetime.strptime(day_date, "%Y-%m-%d")
        except ValueError:
            click.echo(f"Invalid date format: {day_date}. Use YYYY-MM-DD.", err=True)
            sys.exit(1)

    with TrackerCore.open(db) as core:
        aggregates = core.aggregates.list_all()

    rows = [
        (a.site_key, a.daily_buckets[day_date])
        for a in aggregates
        if day_date in a.daily_buckets and a.daily_buckets[day_date].seconds > 0
    ]
    rows.sort(key=lambda row: (-row[1].seconds, row[0]))
    total = sum(bucket.seconds for _, bucket in rows)

    if output_json:
        output = {
            "date": day_date,
            "total_seconds": total,
            "sites": [
                {"site": site, "seconds": bucket.seconds, "sessions": bucket.sessions}
                for site, bucket in rows
            ],
        }
        click.echo(json.dumps(output, indent=2))
        return

    click.echo(f"Time Report: {day_date}")
    click.echo()
    if not rows:
        click.echo("No time tracked for this day.")
        return

    click.echo(f"Total: {format_duration(total)}")
    click.echo()
    max_seconds = rows[0][1].seconds
    for site, bucket in rows:
        display_site = site if len(site) <= 28 else site[:25] + "..."
        bar = make_progress_bar(bucket.seconds, max_seconds)
        click.echo(
            f"  {display_site:<28} {format_duration(bucket.seconds):>9} "
            f"{bucket.sessions:>5}x   {bar}"
        )


@main.command("intervals")
@db_option
@click.option("--date", "date", help="Only intervals of this day (YYYY-MM-DD)")
@click.option("--site", help="Only intervals of this site")
@click.option("--limit", type=int, help="Maximum number of intervals to output")
@reports_errors
def intervals_command(db: Path, date: str | None, site: str | None, limit: int | None) -> None:
    """Output recorded intervals as JSONL.

    Example:
        site-tracker intervals --date 2025-01-25
        site-tracker intervals --site github.com --limit 10
    """
    _require_db(db)

    with TrackerCore.open(db) as core:
        if site is not None:
            intervals = core.intervals.list_by_site(site)
            if date is not None:
                intervals = [i for i in intervals if i.date == date]
        elif date is not None:
            intervals = core.intervals.list_by_date(date)
        else:
            intervals = core.intervals.list_all()

    if limit is not None:
        intervals = intervals[:limit]
    for interval in intervals:
        click.echo(json.dumps(interval.model_dump(by_alias=True)))


@main.command("recalculate")
@db_option
@click.argument("site", required=False)
@reports_errors
def recalculate_command(db: Path, site: str | None) -> None:
    """Rebuild site aggregates from the interval ledger.

    Rebuilds SITE only, or every site when SITE is omitted.
    """
    _require_db(db)

    with TrackerCore.open(db) as core:
        if site is None:
            count = core.aggregates.recalculate_all()
            click.echo(f"Recalculated {count} sites")
            return
        aggregate = core.aggregates.recalculate(site)

    if aggregate is None:
        click.echo(f"{site}: no intervals, aggregate removed")
    else:
        click.echo(
            f"{aggregate.site_key}: {format_duration(aggregate.total_seconds)} "
            f"over {aggregate.total_sessions} sessions"
        )


@main.command("export")
@db_option
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write to this file instead of stdout",
)
@reports_errors
def export_command(db: Path, output: Path | None) -> None:
    """Export all data as one JSON document."""
    _require_db(db)

    with TrackerCore.open(db) as core:
        document = export_data(core)

    text = json.dumps(document, indent=2)
    if output is None:
        click.echo(text)
    else:
        output.write_text(text + "\n", encoding="utf-8")
        click.echo(f"Exported to {output}", err=True)


@main.command("import")
@db_option
@click.argument("source", type=click.File("r", encoding="utf-8"), default="-")
@reports_errors
def import_command(db: Path, source: Any) -> None:
    """Import a JSON document produced by `export` (SOURCE, default stdin).

    Collections missing from the document are left untouched. Invalid records
    are skipped with a warning.
    """
    try:
        document = json.load(source)
    except json.JSONDecodeError as e:
        click.echo(f"Invalid JSON: {e}", err=True)
        sys.exit(1)

    with TrackerCore.open(db) as core:
        report = import_data(core, document)

    for problem in report.problems:
        click.echo(f"Warning: {problem}", err=True)
    click.echo(
        f"Imported {report.tabs} sites, {report.time_intervals} intervals, "
        f"{report.site_limits} limits, {report.settings} settings "
        f"({report.skipped} skipped)"
    )

    if report.imported == 0 and report.skipped > 0:
        sys.exit(1)


@main.command("clear")
@db_option
@click.confirmation_option(prompt="Delete all intervals, site totals and limits?")
@reports_errors
def clear_command(db: Path) -> None:
    """Delete all tracking data. Settings are kept."""
    _require_db(db)
    with TrackerCore.open(db) as core:
        core.clear_all()
    click.echo("Cleared all tracking data")


@main.group("limits")
def limits_group() -> None:
    """Manage daily site limits."""


@limits_group.command("list")
@db_option
@reports_errors
def limits_list(db: Path) -> None:
    """Show every limit with today's usage."""
    _require_db(db)

    today = local_date(now_ms())
    with TrackerCore.open(db) as core:
        limits = core.limits.list_all()
        usage = {a.site_key: a.bucket(today).seconds for a in core.aggregates.list_all()}

    if not limits:
        click.echo("No site limits")
        return
    for limit in limits:
        flags = []
        if not limit.enabled:
            flags.append("disabled")
        if limit.blocked:
            flags.append("blocked")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        used = format_duration(usage.get(limit.site_key, 0))
        click.echo(f"  {limit.site_key:<28} {used:>9} / {limit.daily_limit_minutes}m{suffix}")


@limits_group.command("set")
@db_option
@click.argument("site")
@click.argument("minutes", type=click.IntRange(min=0))
@click.option("--disabled", is_flag=True, help="Store the limit without enforcing it")
@reports_errors
def limits_set(db: Path, site: str, minutes: int, disabled: bool) -> None:
    """Set the daily limit for SITE to MINUTES."""
    with TrackerCore.open(db) as core:
        try:
            existing = core.limits.get(site)
            limit = SiteLimit(
                site_key=site,
                daily_limit_minutes=minutes,
                enabled=not disabled,
                blocked=existing.blocked if existing else False,
            )
            core.limits.save(limit)
        except SchemaError as e:
            click.echo(f"Invalid limit: {e}", err=True)
            sys.exit(1)
    click.echo(f"{limit.site_key}: {minutes} minutes per day")


@limits_group.command("remove")
@db_option
@click.argument("site")
@reports_errors
def limits_remove(db: Path, site: str) -> None:
    """Remove the limit for SITE."""
    _require_db(db)
    with TrackerCore.open(db) as core:
        removed = core.limits.delete(site)
    if not removed:
        click.echo(f"No limit for {site}", err=True)
        sys.exit(1)
    click.echo(f"Removed limit for {site}")


@limits_group.command("unblock")
@db_option
@click.argument("site")
@reports_errors
def limits_unblock(db: Path, site: str) -> None:
    """Clear the blocked flag for SITE."""
    _require_db(db)
    with TrackerCore.open(db) as core:
        limit = core.limits.clear_blocked(site)
    click.echo(f"Unblocked {limit.site_key}")


@limits_group.command("reset")
@db_option
@reports_errors
def limits_reset(db: Path) -> None:
    """Clear the blocked flag on every limit (run at the start of a day)."""
    _require_db(db)
    with TrackerCore.open(db) as core:
        count = core.limits.reset_blocked()
    click.echo(f"Unblocked {count} sites")


@main.group("settings")
def settings_group() -> None:
    """Show and change settings."""


@settings_group.command("show")
@db_option
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@reports_errors
def settings_show(db: Path, output_json: bool) -> None:
    """Show effective settings (stored values over defaults)."""
    with TrackerCore.open(db) as core:
        values = core.settings.load().model_dump(by_alias=True)
        extra = {k: v for k, v in core.settings.as_dict().items() if k not in values}
    values.update(extra)

    if output_json:
        click.echo(json.dumps(values, indent=2))
        return
    for key, value in values.items():
        click.echo(f"  {key}: {json.dumps(value)}")


@settings_group.command("set")
@db_option
@click.argument("key")
@click.argument("value")
@reports_errors
def settings_set(db: Path, key: str, value: str) -> None:
    """Set KEY to VALUE (parsed as JSON when possible, e.g. true, 25)."""
    with TrackerCore.open(db) as core:
        core.settings.set(key, parse_setting_value(value))
    click.echo(f"{key} = {value}")


@settings_group.command("reset")
@db_option
@reports_errors
def settings_reset(db: Path) -> None:
    """Restore every setting to its default."""
    with TrackerCore.open(db) as core:
        count = core.settings.reset()
    click.echo(f"Reset {count} settings")


if __name__ == "__main__":
    main()
