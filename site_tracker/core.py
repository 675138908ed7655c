"""Wiring: one gateway and every store, the monitor and the tracker on top."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from site_tracker.aggregates import SiteAggregateStore
from site_tracker.gateway import PersistenceGateway
from site_tracker.intervals import IntervalStore
from site_tracker.limits import LimitMonitor, LimitStore, NotificationSink, log_notification
from site_tracker.models import now_ms
from site_tracker.settings import SettingsStore
from site_tracker.tracker import DEFAULT_FLUSH_INTERVAL_MS, SessionTracker

logger = logging.getLogger(__name__)


class TrackerCore:
    """Everything a collaborator needs, built around one PersistenceGateway.

    Usable as a context manager; closing it closes the database.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        notify: NotificationSink = log_notification,
        clock: Callable[[], int] = now_ms,
        flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS,
    ) -> None:
        self.gateway = gateway
        self.intervals = IntervalStore(gateway)
        self.aggregates = SiteAggregateStore(gateway, self.intervals)
        self.limits = LimitStore(gateway)
        self.settings = SettingsStore(gateway)
        self.monitor = LimitMonitor(self.limits, self.aggregates, self.settings, notify)
        self.tracker = SessionTracker(
            self.intervals,
            self.aggregates,
            self.monitor,
            clock=clock,
            flush_interval_ms=flush_interval_ms,
        )

    def __enter__(self) -> TrackerCore:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    @classmethod
    def open(cls, path: Path, **kwargs: Any) -> TrackerCore:
        """Open or create a database at the given path."""
        return cls(PersistenceGateway.open(path), **kwargs)

    @classmethod
    def open_in_memory(cls, **kwargs: Any) -> TrackerCore:
        """Core over an in-memory database for testing."""
        return cls(PersistenceGateway.open_in_memory(), **kwargs)

    def close(self) -> None:
        self.gateway.close()

    def clear_all(self) -> None:
        """Delete intervals, aggregates and limits. Settings are kept."""
        with self.gateway.transaction():
            self.intervals.clear()
            self.aggregates.clear()
            self.limits.clear()
        logger.info("Cleared all tracking data")
