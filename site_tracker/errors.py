"""Exceptions raised by the tracking core."""

from __future__ import annotations


class TrackerError(Exception):
    """Base exception for tracker errors."""

    pass


class ValidationError(TrackerError):
    """Raised when a record is missing a required field or holds a bad value.

    Always raised before any storage write is attempted.
    """

    pass


class PersistenceError(TrackerError):
    """Raised when the storage backend fails to complete a read or write."""

    pass


class NotFoundError(TrackerError):
    """Raised when a read targets a key that does not exist."""

    def __init__(self, table: str, key: str) -> None:
        super().__init__(f"No record '{key}' in {table}")
        self.table = table
        self.key = key
