"""Session state machine: turns activation/focus/tick signals into flushes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from site_tracker.aggregates import SiteAggregateStore
from site_tracker.errors import PersistenceError
from site_tracker.intervals import IntervalStore
from site_tracker.limits import LimitMonitor
from site_tracker.models import (
    Session,
    TimeInterval,
    local_date,
    new_interval_id,
    normalize_site_key,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL_MS = 60_000

# Browser-internal pages and extension pages are never tracked
IGNORED_PREFIXES = (
    "chrome://",
    "chrome-extension://",
    "about:",
    "edge://",
    "moz-extension://",
    "view-source:",
)


def is_ignored(site_key_or_url: str | None) -> bool:
    """True if the input names a page that must never start a session."""
    if not site_key_or_url or not site_key_or_url.strip():
        return True
    return site_key_or_url.strip().lower().startswith(IGNORED_PREFIXES)


class SessionTracker:
    """Owns the single in-progress Session.

    States are Idle (session is None) and Active. Every transition, including
    the flush it triggers, runs under one lock, so a flush always finishes
    persisting before the next transition can start and two signals can never
    close the same session twice.

    Storage failures during a flush are logged and the interval is dropped;
    the state machine advances regardless so tracking keeps going.
    """

    def __init__(
        self,
        intervals: IntervalStore,
        aggregates: SiteAggregateStore,
        monitor: LimitMonitor,
        *,
        clock: Callable[[], int] = now_ms,
        flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS,
        id_factory: Callable[[int], str] = new_interval_id,
    ) -> None:
        self._intervals = intervals
        self._aggregates = aggregates
        self._monitor = monitor
        self._clock = clock
        self.flush_interval_ms = flush_interval_ms
        self._id_factory = id_factory
        self._lock = threading.RLock()
        self._session: Session | None = None

    @property
    def session(self) -> Session | None:
        """The in-progress session, or None when idle."""
        return self._session

    @property
    def is_active(self) -> bool:
        return self._session is not None

    def on_site_activated(
        self,
        site_key_or_url: str,
        now: int | None = None,
        target_id: str | None = None,
    ) -> TimeInterval | None:
        """A site became the visible, focused page.

        Closes any running session first. Ignored pages leave the tracker idle.

        Returns:
            The interval flushed for the previous session, if any.
        """
        with self._lock:
            now = self._clock() if now is None else now
            flushed = self._close(now)
            if is_ignored(site_key_or_url):
                logger.debug("Not tracking ignored page %s", site_key_or_url)
                return flushed
            site_key = normalize_site_key(site_key_or_url)
            self._session = Session(
                site_key=site_key, started_at=now, last_flush_at=now, target_id=target_id
            )
            logger.debug("Started tracking %s", site_key)
            return flushed

    def on_focus_lost(self, now: int | None = None) -> TimeInterval | None:
        """The browser lost focus: close the session and go idle."""
        with self._lock:
            now = self._clock() if now is None else now
            return self._close(now)

    def on_periodic_tick(
        self,
        now: int | None = None,
        flush_interval_ms: int | None = None,
    ) -> TimeInterval | None:
        """Flush a partial interval if the session has run long enough.

        The session rolls forward (started_at = last_flush_at = now) and stays
        active, so at most one flush interval of time is ever unpersisted.
        """
        with self._lock:
            now = self._clock() if now is None else now
            if flush_interval_ms is None:
                flush_interval_ms = self.flush_interval_ms
            session = self._session
            if session is None or now - session.last_flush_at < flush_interval_ms:
                return None
            self._session = Session(
                site_key=session.site_key,
                started_at=now,
                last_flush_at=now,
                target_id=session.target_id,
            )
            return self._flush(session, now)

    def on_tracked_target_removed(
        self, target_id: str, now: int | None = None
    ) -> TimeInterval | None:
        """A tab closed. Only closes the session if that tab backed it."""
        with self._lock:
            session = self._session
            if session is None or session.target_id is None or session.target_id != target_id:
                return None
            now = self._clock() if now is None else now
            return self._close(now)

    def _close(self, now: int) -> TimeInterval | None:
        session = self._session
        if session is None:
            return None
        self._session = None
        logger.debug("Stopped tracking %s", session.site_key)
        return self._flush(session, now)

    def _flush(self, session: Session, ended_at: int) -> TimeInterval | None:
        """Persist one session slice: append, merge, evaluate limits.

        Slices shorter than one second are dropped without touching storage.
        """
        duration_seconds = (ended_at - session.started_at) // 1000
        if duration_seconds < 1:
            return None

        interval = TimeInterval(
            id=self._id_factory(ended_at),
            site_key=session.site_key,
            started_at=session.started_at,
            ended_at=ended_at,
            duration_seconds=duration_seconds,
            date=local_date(session.started_at),
        )
        try:
            self._intervals.append(interval)
            self._aggregates.merge(interval.site_key, interval.date, duration_seconds, 1)
        except PersistenceError:
            logger.error(
                "Dropped %ds interval for %s on %s: storage write failed",
                duration_seconds,
                interval.site_key,
                interval.date,
                exc_info=True,
            )
            return None
        logger.debug("Flushed %ds for %s", duration_seconds, interval.site_key)

        try:
            self._monitor.evaluate(interval.site_key, interval.date)
        except PersistenceError:
            logger.error(
                "Limit check for %s on %s failed", interval.site_key, interval.date, exc_info=True
            )
        return interval


class PeriodicTicker:
    """Calls SessionTracker.on_periodic_tick on a fixed cadence.

    Runs on a daemon thread until stop(). A failing tick is logged and the
    loop carries on.
    """

    def __init__(self, tracker: SessionTracker, interval_seconds: float = 60.0) -> None:
        self._tracker = tracker
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> PeriodicTicker:
        self.start()
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="site-tracker-tick", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self._tracker.on_periodic_tick()
            except Exception:
                logger.exception("Periodic tick failed")
