"""Per-site rollups with a serialized read-modify-write merge."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from site_tracker.errors import NotFoundError, ValidationError
from site_tracker.gateway import AGGREGATES, PersistenceGateway
from site_tracker.intervals import IntervalStore
from site_tracker.models import DATE_PATTERN, DayBucket, SiteAggregate, normalize_site_key

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(DATE_PATTERN)


def accumulate(
    aggregate: SiteAggregate, date: str, delta_seconds: int, delta_sessions: int
) -> None:
    """Fold one delta into an aggregate's totals and its bucket for date.

    The only code that writes totals or buckets. Merge, recalculate and
    restore all go through here, which keeps totals equal to the bucket sums.
    """
    aggregate.total_seconds += delta_seconds
    aggregate.total_sessions += delta_sessions
    bucket = aggregate.daily_buckets.get(date)
    if bucket is None:
        bucket = DayBucket()
        aggregate.daily_buckets[date] = bucket
    bucket.seconds += delta_seconds
    bucket.sessions += delta_sessions


class _FifoLock:
    """Ticket lock: holders are admitted strictly in arrival order."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0
        # Threads holding or waiting; guarded by the owning store's locks_lock
        self.users = 0

    @contextmanager
    def hold(self) -> Iterator[None]:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._serving:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._serving += 1
                self._cond.notify_all()


class SiteAggregateStore:
    """One SiteAggregate per site key.

    Writes for the same key are serialized in arrival order, each applied to
    the result of the previous one; writes for different keys do not wait on
    each other's key lock.
    """

    def __init__(self, gateway: PersistenceGateway, intervals: IntervalStore) -> None:
        self._gateway = gateway
        self._intervals = intervals
        self._locks: dict[str, _FifoLock] = {}
        self._locks_lock = threading.Lock()

    @contextmanager
    def _key_lock(self, site_key: str) -> Iterator[None]:
        """Hold the FIFO lock of one site key, dropping it once nobody waits."""
        with self._locks_lock:
            lock = self._locks.get(site_key)
            if lock is None:
                lock = self._locks[site_key] = _FifoLock()
            lock.users += 1
        try:
            with lock.hold():
                yield
        finally:
            with self._locks_lock:
                lock.users -= 1
                if lock.users == 0:
                    del self._locks[site_key]

    def _load(self, site_key: str) -> SiteAggregate | None:
        doc = self._gateway.get(AGGREGATES.name, site_key)
        return SiteAggregate.model_validate(doc) if doc else None

    def _save(self, aggregate: SiteAggregate) -> None:
        self._gateway.put(
            AGGREGATES.name, aggregate.site_key, aggregate.model_dump(by_alias=True)
        )

    def merge(
        self,
        site_key: str,
        date: str,
        delta_seconds: int,
        delta_sessions: int = 1,
    ) -> SiteAggregate:
        """Add a delta to a site's totals and to its bucket for date.

        Creates the aggregate on first use. The load, update and store happen
        in one transaction under the site's lock.

        Returns:
            The aggregate as persisted by this merge.

        Raises:
            ValidationError: If site_key is empty or date is not YYYY-MM-DD.
            PersistenceError: If the read or write fails.
        """
        site_key = normalize_site_key(site_key)
        if not site_key:
            raise ValidationError("merge requires a site key")
        if not _DATE_RE.fullmatch(date or ""):
            raise ValidationError(f"merge requires a YYYY-MM-DD date, got {date!r}")

        with self._key_lock(site_key), self._gateway.transaction():
            aggregate = self._load(site_key) or SiteAggregate(site_key=site_key)
            accumulate(aggregate, date, delta_seconds, delta_sessions)
            self._save(aggregate)

        logger.debug(
            "Merged %+ds/%+d into %s on %s (total %ds)",
            delta_seconds,
            delta_sessions,
            site_key,
            date,
            aggregate.total_seconds,
        )
        return aggregate

    def get_by_site(self, site_key: str) -> SiteAggregate | None:
        """Return the aggregate for a site, or None if it has none yet."""
        return self._load(normalize_site_key(site_key))

    def require(self, site_key: str) -> SiteAggregate:
        """Like get_by_site, but absence is an error.

        Raises:
            NotFoundError: If the site has no aggregate.
        """
        aggregate = self.get_by_site(site_key)
        if aggregate is None:
            raise NotFoundError(AGGREGATES.name, normalize_site_key(site_key))
        return aggregate

    def list_all(self) -> list[SiteAggregate]:
        return [SiteAggregate.model_validate(d) for d in self._gateway.list_all(AGGREGATES.name)]

    def delete(self, site_key: str) -> bool:
        """Remove a site's aggregate. Its intervals stay in the ledger."""
        site_key = normalize_site_key(site_key)
        with self._key_lock(site_key):
            return self._gateway.delete(AGGREGATES.name, site_key)

    def clear(self) -> int:
        count = self._gateway.clear(AGGREGATES.name)
        logger.info("Cleared %d site aggregates", count)
        return count

    def recalculate(self, site_key: str) -> SiteAggregate | None:
        """Rebuild a site's aggregate from every interval in the ledger.

        The stored aggregate is discarded first. A site with no intervals ends
        up with no aggregate at all.

        Returns:
            The rebuilt aggregate, or None if the site has no intervals.
        """
        site_key = normalize_site_key(site_key)
        with self._key_lock(site_key), self._gateway.transaction():
            previous = self._load(site_key)
            intervals = self._intervals.list_by_site(site_key)
            if not intervals:
                self._gateway.delete(AGGREGATES.name, site_key)
                rebuilt = None
            else:
                rebuilt = SiteAggregate(
                    site_key=site_key, favicon=previous.favicon if previous else None
                )
                for interval in intervals:
                    accumulate(rebuilt, interval.date, interval.duration_seconds, 1)
                self._save(rebuilt)

        if previous != rebuilt:
            logger.info(
                "Recalculated %s: %s -> %s seconds",
                site_key,
                previous.total_seconds if previous else None,
                rebuilt.total_seconds if rebuilt else None,
            )
        return rebuilt

    def recalculate_all(self) -> int:
        """Recalculate every site that has intervals or an aggregate.

        Returns:
            Number of sites processed.
        """
        site_keys = {i.site_key for i in self._intervals.list_all()}
        site_keys.update(a.site_key for a in self.list_all())
        for site_key in sorted(site_keys):
            self.recalculate(site_key)
        return len(site_keys)

    def restore(self, aggregate: SiteAggregate) -> SiteAggregate:
        """Replace a site's aggregate with an imported copy.

        Each bucket is folded into a zeroed aggregate, so the stored totals are
        derived from the buckets rather than trusted.

        Raises:
            ValidationError: If the copy's totals disagree with its buckets.
        """
        if not aggregate.is_consistent():
            raise ValidationError(
                f"Aggregate for {aggregate.site_key} has totals that do not match its daily buckets"
            )
        rebuilt = SiteAggregate(site_key=aggregate.site_key, favicon=aggregate.favicon)
        for date, bucket in aggregate.daily_buckets.items():
            accumulate(rebuilt, date, bucket.seconds, bucket.sessions)
        with self._key_lock(rebuilt.site_key), self._gateway.transaction():
            self._save(rebuilt)
        return rebuilt
