"""SQLite-backed keyed document store with secondary indexes."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from site_tracker.errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSpec:
    """Declaration of one logical table: primary key field and indexed fields."""

    name: str
    primary_key: str
    indexes: tuple[str, ...] = ()

    def column(self, field: str) -> str:
        """SQL column holding the value of an indexed field."""
        return f"ix_{field}"

    def ddl(self) -> str:
        columns = "".join(f",\n    {self.column(f)} TEXT" for f in self.indexes)
        statements = [
            f"""
CREATE TABLE IF NOT EXISTS {self.name} (
    pk TEXT PRIMARY KEY,
    doc TEXT NOT NULL{columns}
);"""
        ]
        for field in self.indexes:
            statements.append(
                f"CREATE INDEX IF NOT EXISTS idx_{self.name}_{field} "
                f"ON {self.name}({self.column(field)});"
            )
        return "\n".join(statements)


INTERVALS = TableSpec("intervals", "id", ("date", "siteKey"))
AGGREGATES = TableSpec("aggregates", "siteKey")
LIMITS = TableSpec("limits", "siteKey")
SETTINGS = TableSpec("settings", "key")

TABLES = (INTERVALS, AGGREGATES, LIMITS, SETTINGS)


class PersistenceGateway:
    """Durable keyed storage over a single SQLite connection.

    Records are JSON documents keyed by primary key; indexed fields are copied
    into their own columns on every put. Listing always returns documents in
    insertion order (an upsert keeps the original position).

    Thread-safe: all access goes through one re-entrant lock. Every call that
    returns normally has been committed.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        tables: tuple[TableSpec, ...] = TABLES,
    ) -> None:
        self._conn = conn
        self._tables = {spec.name: spec for spec in tables}
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def __enter__(self) -> PersistenceGateway:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    @classmethod
    def open(cls, path: Path) -> PersistenceGateway:
        """Open or create a database at the given path."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                path, timeout=30.0, isolation_level=None, check_same_thread=False
            )
        except (OSError, sqlite3.Error) as e:
            raise PersistenceError(f"Cannot open database {path}: {e}") from e
        try:
            return cls(conn)
        except PersistenceError:
            conn.close()
            raise

    @classmethod
    def open_in_memory(cls) -> PersistenceGateway:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:", isolation_level=None, check_same_thread=False)
        return cls(conn)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def _init_schema(self) -> None:
        """Create tables and indexes. Safe to run against an existing database."""
        script = "\n".join(spec.ddl() for spec in self._tables.values())
        with self._lock:
            try:
                self._conn.executescript(script)
            except sqlite3.Error as e:
                raise PersistenceError(f"Schema initialization failed: {e}") from e

    def _spec(self, table: str) -> TableSpec:
        try:
            return self._tables[table]
        except KeyError:
            raise ValidationError(f"Unknown table '{table}'") from None

    def _run(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"Storage operation failed: {e}") from e

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error:
            logger.warning("Rollback failed", exc_info=True)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group gateway calls into one atomic commit.

        Re-entrant: nested blocks join the outermost transaction, which
        commits on success and rolls back on any exception.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._run("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
                self._run("COMMIT")
            except BaseException:
                self._rollback()
                raise
            finally:
                self._depth = 0

    def get(self, table: str, key: str) -> dict[str, Any] | None:
        """Fetch one document by primary key, or None if absent."""
        spec = self._spec(table)
        with self._lock:
            row = self._run(f"SELECT doc FROM {spec.name} WHERE pk = ?", (key,)).fetchone()
        return json.loads(row[0]) if row else None

    def put(self, table: str, key: str, value: Mapping[str, Any]) -> None:
        """Insert or replace the document stored under key."""
        spec = self._spec(table)
        if value.get(spec.primary_key) != key:
            raise ValidationError(
                f"{table}: document {spec.primary_key}={value.get(spec.primary_key)!r} "
                f"does not match key {key!r}"
            )
        columns = ["pk", "doc"] + [spec.column(f) for f in spec.indexes]
        params = [key, json.dumps(dict(value))] + [value.get(f) for f in spec.indexes]
        placeholders = ", ".join("?" * len(columns))
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns[1:])
        with self.transaction():
            self._run(
                f"""
                INSERT INTO {spec.name} ({", ".join(columns)}) VALUES ({placeholders})
                ON CONFLICT(pk) DO UPDATE SET {updates}
                """,
                params,
            )

    def delete(self, table: str, key: str) -> bool:
        """Delete a document. Returns True if it existed."""
        spec = self._spec(table)
        with self.transaction():
            cursor = self._run(f"DELETE FROM {spec.name} WHERE pk = ?", (key,))
        return cursor.rowcount > 0

    def scan_by_index(self, table: str, index: str, value: Any) -> list[dict[str, Any]]:
        """Return every document whose indexed field equals value."""
        spec = self._spec(table)
        if index not in spec.indexes:
            raise ValidationError(f"{table} has no index on '{index}'")
        with self._lock:
            rows = self._run(
                f"SELECT doc FROM {spec.name} WHERE {spec.column(index)} = ? ORDER BY rowid",
                (value,),
            ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def list_all(self, table: str) -> list[dict[str, Any]]:
        """Return all documents of a table in insertion order."""
        spec = self._spec(table)
        with self._lock:
            rows = self._run(f"SELECT doc FROM {spec.name} ORDER BY rowid").fetchall()
        return [json.loads(row[0]) for row in rows]

    def clear(self, table: str) -> int:
        """Delete every document of a table. Returns the number removed."""
        spec = self._spec(table)
        with self.transaction():
            cursor = self._run(f"DELETE FROM {spec.name}")
        return cursor.rowcount
