"""Tests for site aggregates and the merge algorithm."""

import threading

import pytest

from site_tracker.aggregates import SiteAggregateStore, accumulate
from site_tracker.errors import NotFoundError, ValidationError
from site_tracker.gateway import PersistenceGateway
from site_tracker.intervals import IntervalStore
from site_tracker.models import SiteAggregate, TimeInterval


def make_stores() -> tuple[IntervalStore, SiteAggregateStore]:
    gateway = PersistenceGateway.open_in_memory()
    intervals = IntervalStore(gateway)
    return intervals, SiteAggregateStore(gateway, intervals)


def add_interval(
    intervals: IntervalStore, interval_id: str, site: str, date: str, duration: int
) -> None:
    intervals.append(
        TimeInterval(
            id=interval_id,
            site_key=site,
            started_at=0,
            ended_at=duration * 1000,
            duration_seconds=duration,
            date=date,
        )
    )


class TestAccumulate:
    """Tests for the shared bucket accumulation."""

    def test_creates_bucket_and_updates_totals(self):
        aggregate = SiteAggregate(site_key="a.com")
        accumulate(aggregate, "2025-01-25", 30, 1)
        accumulate(aggregate, "2025-01-25", 15, 1)
        accumulate(aggregate, "2025-01-26", 5, 1)

        assert aggregate.total_seconds == 50
        assert aggregate.total_sessions == 3
        assert aggregate.daily_buckets["2025-01-25"].seconds == 45
        assert aggregate.daily_buckets["2025-01-25"].sessions == 2
        assert aggregate.is_consistent()


class TestMerge:
    """Tests for SiteAggregateStore.merge."""

    def test_first_merge_creates_aggregate(self):
        _, store = make_stores()
        assert store.get_by_site("a.com") is None

        aggregate = store.merge("a.com", "2025-01-25", 125, 1)

        assert aggregate.total_seconds == 125
        assert aggregate.total_sessions == 1
        assert store.get_by_site("a.com") == aggregate

    def test_merges_accumulate_per_day(self):
        _, store = make_stores()
        store.merge("a.com", "2025-01-25", 10)
        store.merge("a.com", "2025-01-25", 20)
        store.merge("a.com", "2025-01-26", 30)

        aggregate = store.get_by_site("a.com")
        assert aggregate.total_seconds == 60
        assert aggregate.total_sessions == 3
        assert aggregate.bucket("2025-01-25").seconds == 30
        assert aggregate.bucket("2025-01-26").sessions == 1
        assert list(aggregate.daily_buckets) == ["2025-01-25", "2025-01-26"]

    def test_merge_normalizes_site_key(self):
        _, store = make_stores()
        store.merge("https://www.a.com/page", "2025-01-25", 10)
        assert store.get_by_site("www.a.com").total_seconds == 10

    def test_merge_rejects_missing_site_or_bad_date(self):
        _, store = make_stores()
        with pytest.raises(ValidationError):
            store.merge("", "2025-01-25", 10)
        with pytest.raises(ValidationError):
            store.merge("   ", "2025-01-25", 10)
        with pytest.raises(ValidationError):
            store.merge("a.com", "yesterday", 10)
        with pytest.raises(ValidationError):
            store.merge("a.com", "2025-01-25\n", 10)
        assert store.list_all() == []

    def test_sites_are_independent(self):
        _, store = make_stores()
        store.merge("a.com", "2025-01-25", 10)
        store.merge("b.com", "2025-01-25", 20)

        assert store.get_by_site("a.com").total_seconds == 10
        assert store.get_by_site("b.com").total_seconds == 20


class TestConcurrentMerge:
    """Merges racing on the same key must not lose updates."""

    def test_no_lost_updates_same_key(self):
        _, store = make_stores()
        threads_count = 8
        merges_per_thread = 25
        barrier = threading.Barrier(threads_count)

        def worker(n: int) -> None:
            barrier.wait()
            for _ in range(merges_per_thread):
                store.merge("a.com", "2025-01-25", n + 1, 1)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        aggregate = store.get_by_site("a.com")
        expected_seconds = sum(n + 1 for n in range(threads_count)) * merges_per_thread
        assert aggregate.total_seconds == expected_seconds
        assert aggregate.total_sessions == threads_count * merges_per_thread
        assert aggregate.is_consistent()

    def test_concurrent_merges_across_keys(self):
        _, store = make_stores()
        sites = ["a.com", "b.com", "c.com"]

        def worker(site: str) -> None:
            for day in range(1, 11):
                store.merge(site, f"2025-01-{day:02d}", 6, 1)

        threads = [threading.Thread(target=worker, args=(s,)) for s in sites for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for site in sites:
            aggregate = store.get_by_site(site)
            assert aggregate.total_seconds == 180
            assert aggregate.total_sessions == 30
            assert all(b.seconds == 18 for b in aggregate.daily_buckets.values())

    def test_each_merge_sees_previous_result(self):
        """Sequential merge results form a running total with no gaps."""
        _, store = make_stores()
        results: list[int] = []
        lock = threading.Lock()

        def worker() -> None:
            for _ in range(20):
                aggregate = store.merge("a.com", "2025-01-25", 1, 1)
                with lock:
                    results.append(aggregate.total_seconds)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == list(range(1, 101))

    def test_idle_key_locks_are_released(self):
        _, store = make_stores()

        def worker(n: int) -> None:
            for i in range(20):
                store.merge(f"site{(n + i) % 7}.com", "2025-01-25", 1, 1)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(a.total_seconds for a in store.list_all()) == 120
        assert store._locks == {}

        store.delete("site0.com")
        assert store._locks == {}


class TestReadSurface:
    """Tests for require, list_all, delete and clear."""

    def test_require_missing_raises(self):
        _, store = make_stores()
        with pytest.raises(NotFoundError):
            store.require("a.com")

    def test_list_delete_clear(self):
        _, store = make_stores()
        store.merge("a.com", "2025-01-25", 10)
        store.merge("b.com", "2025-01-25", 10)

        assert [a.site_key for a in store.list_all()] == ["a.com", "b.com"]
        assert store.delete("a.com") is True
        assert store.delete("a.com") is False
        assert [a.site_key for a in store.list_all()] == ["b.com"]
        assert store.clear() == 1
        assert store.list_all() == []


class TestRecalculate:
    """Tests for rebuilding aggregates from the ledger."""

    def test_recalculate_repairs_drift(self):
        intervals, store = make_stores()
        add_interval(intervals, "i1", "a.com", "2025-01-25", 30)
        add_interval(intervals, "i2", "a.com", "2025-01-26", 20)
        add_interval(intervals, "i3", "b.com", "2025-01-25", 99)
        # Drifted aggregate: counted one merge twice
        store.merge("a.com", "2025-01-25", 30)
        store.merge("a.com", "2025-01-25", 30)

        rebuilt = store.recalculate("a.com")

        assert rebuilt.total_seconds == 50
        assert rebuilt.total_sessions == 2
        assert rebuilt.bucket("2025-01-25").seconds == 30
        assert rebuilt.bucket("2025-01-26").seconds == 20
        assert store.get_by_site("a.com") == rebuilt

    def test_recalculate_without_intervals_removes_aggregate(self):
        _, store = make_stores()
        store.merge("a.com", "2025-01-25", 30)

        assert store.recalculate("a.com") is None
        assert store.get_by_site("a.com") is None

    def test_recalculate_all(self):
        intervals, store = make_stores()
        add_interval(intervals, "i1", "a.com", "2025-01-25", 30)
        add_interval(intervals, "i2", "b.com", "2025-01-25", 40)
        store.merge("stale.com", "2025-01-25", 10)

        assert store.recalculate_all() == 3
        assert store.get_by_site("a.com").total_seconds == 30
        assert store.get_by_site("b.com").total_seconds == 40
        assert store.get_by_site("stale.com") is None


class TestRestore:
    """Tests for replacing an aggregate with an imported copy."""

    def test_restore_replaces_record(self):
        _, store = make_stores()
        store.merge("a.com", "2025-01-20", 999)
        copy = SiteAggregate.model_validate(
            {
                "siteKey": "a.com",
                "totalSeconds": 30,
                "totalSessions": 2,
                "dailyBuckets": {
                    "2025-01-24": {"seconds": 10, "sessions": 1},
                    "2025-01-25": {"seconds": 20, "sessions": 1},
                },
            }
        )

        restored = store.restore(copy)

        assert restored == copy
        assert store.get_by_site("a.com") == copy

    def test_restore_rejects_inconsistent_totals(self):
        _, store = make_stores()
        bad = SiteAggregate.model_validate(
            {
                "siteKey": "a.com",
                "totalSeconds": 31,
                "totalSessions": 1,
                "dailyBuckets": {"2025-01-25": {"seconds": 30, "sessions": 1}},
            }
        )
        with pytest.raises(ValidationError):
            store.restore(bad)
        assert store.get_by_site("a.com") is None
