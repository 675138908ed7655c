"""Append-only ledger of completed time intervals."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import pydantic

from site_tracker.errors import NotFoundError, ValidationError
from site_tracker.gateway import INTERVALS, PersistenceGateway
from site_tracker.models import TimeInterval, normalize_site_key

logger = logging.getLogger(__name__)

# Checked before validation so a bad record never reaches storage.
# Legacy export names are accepted as stand-ins.
REQUIRED_FIELDS = {
    "id": ("id",),
    "siteKey": ("siteKey", "site_key", "tabId", "url"),
    "startedAt": ("startedAt", "started_at", "startTime"),
    "date": ("date",),
}


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _check_required(record: Mapping[str, Any]) -> None:
    missing = [
        name
        for name, aliases in REQUIRED_FIELDS.items()
        if all(_blank(record.get(alias)) for alias in aliases)
    ]
    if missing:
        raise ValidationError(f"Time interval missing required field(s): {', '.join(missing)}")


def coerce_interval(record: TimeInterval | Mapping[str, Any]) -> TimeInterval:
    """Validate a mapping (or pass through a model) as a TimeInterval.

    Raises:
        ValidationError: If a required field is missing or a value is invalid.
    """
    if isinstance(record, TimeInterval):
        return record
    _check_required(record)
    try:
        return TimeInterval.model_validate(dict(record))
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid time interval: {e}") from e


class IntervalStore:
    """Ledger of TimeInterval facts.

    Intervals are never updated after append; they leave the ledger only
    through delete() or clear().
    """

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    def append(self, interval: TimeInterval | Mapping[str, Any]) -> TimeInterval:
        """Persist an interval and return it as a validated model.

        Re-appending the same ID replaces the stored copy, which keeps
        imports idempotent.

        Raises:
            ValidationError: If id, siteKey, startedAt or date is missing.
            PersistenceError: If the write fails.
        """
        record = coerce_interval(interval)
        self._gateway.put(INTERVALS.name, record.id, record.model_dump(by_alias=True))
        logger.debug(
            "Appended interval %s: %s %ss on %s",
            record.id,
            record.site_key,
            record.duration_seconds,
            record.date,
        )
        return record

    def get(self, interval_id: str) -> TimeInterval:
        """Fetch one interval.

        Raises:
            NotFoundError: If no interval has this ID.
        """
        doc = self._gateway.get(INTERVALS.name, interval_id)
        if doc is None:
            raise NotFoundError(INTERVALS.name, interval_id)
        return TimeInterval.model_validate(doc)

    def list_by_date(self, date: str) -> list[TimeInterval]:
        """Intervals recorded for a local calendar day, in insertion order."""
        docs = self._gateway.scan_by_index(INTERVALS.name, "date", date)
        return [TimeInterval.model_validate(d) for d in docs]

    def list_by_site(self, site_key: str) -> list[TimeInterval]:
        """Intervals recorded for a site, in insertion order."""
        docs = self._gateway.scan_by_index(
            INTERVALS.name, "siteKey", normalize_site_key(site_key)
        )
        return [TimeInterval.model_validate(d) for d in docs]

    def list_all(self) -> list[TimeInterval]:
        return [TimeInterval.model_validate(d) for d in self._gateway.list_all(INTERVALS.name)]

    def delete(self, interval_id: str) -> bool:
        """Purge one interval. Returns True if it existed.

        Does not touch the site aggregate; run SiteAggregateStore.recalculate
        afterwards to fold the removal into the rollup.
        """
        return self._gateway.delete(INTERVALS.name, interval_id)

    def clear(self) -> int:
        """Delete every interval. Returns the number removed."""
        count = self._gateway.clear(INTERVALS.name)
        logger.info("Cleared %d intervals", count)
        return count
