"""Tests for the SQLite persistence gateway."""

import sqlite3
import threading

import pytest

from site_tracker.errors import PersistenceError, ValidationError
from site_tracker.gateway import (
    AGGREGATES,
    INTERVALS,
    SETTINGS,
    PersistenceGateway,
    TableSpec,
)


def interval_doc(interval_id: str, *, date: str = "2025-01-25", site: str = "a.com") -> dict:
    return {"id": interval_id, "siteKey": site, "date": date, "durationSeconds": 5}


class TestGatewayCreation:
    """Tests for opening and schema initialization."""

    def test_open_in_memory_creates_tables(self):
        gateway = PersistenceGateway.open_in_memory()
        for table in ("intervals", "aggregates", "limits", "settings"):
            assert gateway.list_all(table) == []

    def test_open_creates_parent_directories(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "tracker.db"
        with PersistenceGateway.open(db_path) as gateway:
            gateway.put(SETTINGS.name, "language", {"key": "language", "value": "en"})
        assert db_path.exists()

    def test_reopen_is_idempotent_and_durable(self, tmp_path):
        """Opening an initialized database keeps existing data."""
        db_path = tmp_path / "tracker.db"
        with PersistenceGateway.open(db_path) as gateway:
            gateway.put(INTERVALS.name, "i1", interval_doc("i1"))

        with PersistenceGateway.open(db_path) as gateway:
            assert gateway.get(INTERVALS.name, "i1") == interval_doc("i1")

    def test_table_spec_ddl_declares_indexes(self):
        spec = TableSpec("things", "id", ("color",))
        ddl = spec.ddl()
        assert "CREATE TABLE IF NOT EXISTS things" in ddl
        assert "ix_color TEXT" in ddl
        assert "CREATE INDEX IF NOT EXISTS idx_things_color ON things(ix_color)" in ddl


class TestGatewayReadWrite:
    """Tests for get/put/delete/scan/list/clear."""

    def test_get_missing_returns_none(self):
        gateway = PersistenceGateway.open_in_memory()
        assert gateway.get(AGGREGATES.name, "nope.com") is None

    def test_put_upserts(self):
        gateway = PersistenceGateway.open_in_memory()
        gateway.put(SETTINGS.name, "darkMode", {"key": "darkMode", "value": False})
        gateway.put(SETTINGS.name, "darkMode", {"key": "darkMode", "value": True})

        assert gateway.get(SETTINGS.name, "darkMode") == {"key": "darkMode", "value": True}
        assert len(gateway.list_all(SETTINGS.name)) == 1

    def test_upsert_keeps_insertion_position(self):
        gateway = PersistenceGateway.open_in_memory()
        gateway.put(INTERVALS.name, "b", interval_doc("b"))
        gateway.put(INTERVALS.name, "a", interval_doc("a"))
        gateway.put(INTERVALS.name, "b", interval_doc("b", site="c.com"))

        assert [d["id"] for d in gateway.list_all(INTERVALS.name)] == ["b", "a"]

    def test_put_rejects_mismatched_primary_key(self):
        gateway = PersistenceGateway.open_in_memory()
        with pytest.raises(ValidationError):
            gateway.put(INTERVALS.name, "other", interval_doc("i1"))
        assert gateway.list_all(INTERVALS.name) == []

    def test_unknown_table_raises(self):
        gateway = PersistenceGateway.open_in_memory()
        with pytest.raises(ValidationError):
            gateway.get("tabs", "a.com")

    def test_delete(self):
        gateway = PersistenceGateway.open_in_memory()
        gateway.put(INTERVALS.name, "i1", interval_doc("i1"))

        assert gateway.delete(INTERVALS.name, "i1") is True
        assert gateway.delete(INTERVALS.name, "i1") is False
        assert gateway.get(INTERVALS.name, "i1") is None

    def test_scan_by_index_in_insertion_order(self):
        gateway = PersistenceGateway.open_in_memory()
        gateway.put(INTERVALS.name, "i3", interval_doc("i3", date="2025-01-26"))
        gateway.put(INTERVALS.name, "i1", interval_doc("i1", date="2025-01-25"))
        gateway.put(INTERVALS.name, "i2", interval_doc("i2", date="2025-01-25", site="b.com"))

        by_date = gateway.scan_by_index(INTERVALS.name, "date", "2025-01-25")
        assert [d["id"] for d in by_date] == ["i1", "i2"]

        by_site = gateway.scan_by_index(INTERVALS.name, "siteKey", "a.com")
        assert [d["id"] for d in by_site] == ["i3", "i1"]

    def test_scan_unknown_index_raises(self):
        gateway = PersistenceGateway.open_in_memory()
        with pytest.raises(ValidationError):
            gateway.scan_by_index(INTERVALS.name, "durationSeconds", 5)

    def test_clear_returns_count(self):
        gateway = PersistenceGateway.open_in_memory()
        gateway.put(INTERVALS.name, "i1", interval_doc("i1"))
        gateway.put(INTERVALS.name, "i2", interval_doc("i2"))

        assert gateway.clear(INTERVALS.name) == 2
        assert gateway.list_all(INTERVALS.name) == []


class TestGatewayTransactions:
    """Tests for atomic grouping and error wrapping."""

    def test_transaction_rolls_back_on_error(self):
        gateway = PersistenceGateway.open_in_memory()
        gateway.put(INTERVALS.name, "keep", interval_doc("keep"))

        with pytest.raises(RuntimeError):
            with gateway.transaction():
                gateway.put(INTERVALS.name, "i1", interval_doc("i1"))
                gateway.delete(INTERVALS.name, "keep")
                raise RuntimeError("boom")

        assert [d["id"] for d in gateway.list_all(INTERVALS.name)] == ["keep"]

    def test_nested_transactions_commit_once(self):
        gateway = PersistenceGateway.open_in_memory()
        with gateway.transaction():
            gateway.put(INTERVALS.name, "i1", interval_doc("i1"))
            with gateway.transaction():
                gateway.put(INTERVALS.name, "i2", interval_doc("i2"))

        assert len(gateway.list_all(INTERVALS.name)) == 2

    def test_sqlite_errors_become_persistence_errors(self):
        gateway = PersistenceGateway.open_in_memory()
        gateway.close()
        with pytest.raises(PersistenceError):
            gateway.get(INTERVALS.name, "i1")

    def test_unreadable_path_raises_persistence_error(self, tmp_path):
        # A directory cannot be opened as a database file
        with pytest.raises(PersistenceError):
            gateway = PersistenceGateway.open(tmp_path)
            gateway.put(INTERVALS.name, "i1", interval_doc("i1"))

    def test_concurrent_writers_do_not_corrupt(self):
        """Many threads writing through one gateway all land."""
        gateway = PersistenceGateway.open_in_memory()

        def writer(prefix: str) -> None:
            for n in range(25):
                gateway.put(INTERVALS.name, f"{prefix}-{n}", interval_doc(f"{prefix}-{n}"))

        threads = [threading.Thread(target=writer, args=(f"t{i}",)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(gateway.list_all(INTERVALS.name)) == 100

    def test_wraps_given_connection(self):
        conn = sqlite3.connect(":memory:", isolation_level=None, check_same_thread=False)
        gateway = PersistenceGateway(conn, tables=(SETTINGS,))
        gateway.put(SETTINGS.name, "k", {"key": "k", "value": 1})
        assert gateway.list_all(SETTINGS.name) == [{"key": "k", "value": 1}]
        with pytest.raises(ValidationError):
            gateway.list_all(INTERVALS.name)
