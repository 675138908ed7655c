"""Record types shared by the stores, the tracker and the CLI."""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

LIMIT_REACHED_MESSAGE = "daily limit reached"

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def local_date(timestamp_ms: int) -> str:
    """Local calendar day (YYYY-MM-DD) containing an epoch-ms timestamp."""
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d")


def new_interval_id(timestamp_ms: int | None = None) -> str:
    """Generate an interval ID like '1737799200000-k3j9x0a1b'.

    The millisecond prefix keeps IDs roughly ordered by creation time.
    """
    if timestamp_ms is None:
        timestamp_ms = now_ms()
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{timestamp_ms}-{suffix}"


def normalize_site_key(value: str) -> str:
    """Reduce a URL or host to its bare lowercase hostname.

    Scheme, port, path, query and fragment are dropped. Values without a
    scheme ("a.com/x") are parsed as a host. Anything with no host at all is
    returned stripped but otherwise unchanged.
    """
    value = value.strip()
    if not value:
        return value
    try:
        parsed = urlparse(value if "://" in value else f"//{value}")
        hostname = parsed.hostname
    except ValueError:
        # Malformed netloc (e.g. bad IPv6 brackets)
        return value
    return hostname or value


def required_site_key(value: str) -> str:
    """Normalize a site key for a record field, rejecting blank keys."""
    site_key = normalize_site_key(value)
    if not site_key:
        raise ValueError("site key must not be blank")
    return site_key


class TimeInterval(BaseModel):
    """One completed, immutable slice of time spent on a site.

    Accepts the legacy extension field names (tabId/url, startTime, endTime,
    duration) on input; always serializes with the camelCase names. A page
    title from an import is kept as given.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    site_key: str = Field(
        alias="siteKey",
        validation_alias=AliasChoices("siteKey", "site_key", "tabId", "url"),
        min_length=1,
    )
    started_at: int = Field(
        alias="startedAt",
        validation_alias=AliasChoices("startedAt", "started_at", "startTime"),
    )
    ended_at: int | None = Field(
        default=None,
        alias="endedAt",
        validation_alias=AliasChoices("endedAt", "ended_at", "endTime"),
    )
    duration_seconds: int = Field(
        default=0,
        ge=0,
        alias="durationSeconds",
        validation_alias=AliasChoices("durationSeconds", "duration_seconds", "duration"),
    )
    date: str = Field(pattern=DATE_PATTERN)
    title: str | None = None

    @field_validator("site_key")
    @classmethod
    def _normalize_site_key(cls, value: str) -> str:
        return required_site_key(value)


class DayBucket(BaseModel):
    """Per-day slice of a site aggregate."""

    model_config = ConfigDict(populate_by_name=True)

    seconds: int = Field(default=0, validation_alias=AliasChoices("seconds", "summary"))
    sessions: int = Field(default=0, validation_alias=AliasChoices("sessions", "counter"))


class SiteAggregate(BaseModel):
    """Lifetime and per-day rollup for a single site key.

    total_seconds and total_sessions always equal the sums over
    daily_buckets; only SiteAggregateStore writes these fields.
    """

    model_config = ConfigDict(populate_by_name=True)

    site_key: str = Field(
        alias="siteKey",
        validation_alias=AliasChoices("siteKey", "site_key", "url"),
        min_length=1,
    )
    total_seconds: int = Field(
        default=0,
        alias="totalSeconds",
        validation_alias=AliasChoices("totalSeconds", "total_seconds", "summaryTime"),
    )
    total_sessions: int = Field(
        default=0,
        alias="totalSessions",
        validation_alias=AliasChoices("totalSessions", "total_sessions", "counter"),
    )
    daily_buckets: dict[str, DayBucket] = Field(
        default_factory=dict,
        alias="dailyBuckets",
        validation_alias=AliasChoices("dailyBuckets", "daily_buckets", "days"),
    )
    # Carried through from imports; the tracker never sets it
    favicon: str | None = None

    @field_validator("site_key")
    @classmethod
    def _normalize_site_key(cls, value: str) -> str:
        return required_site_key(value)

    @field_validator("daily_buckets", mode="before")
    @classmethod
    def _buckets_from_day_list(cls, value: Any) -> Any:
        """Convert the legacy `days: [{date, summary, counter}]` list to a map."""
        if not isinstance(value, list):
            return value
        buckets: dict[str, Any] = {}
        for day in value:
            if not isinstance(day, dict) or not day.get("date"):
                raise ValueError("day entry without a date")
            if day["date"] in buckets:
                raise ValueError(f"duplicate day entry for {day['date']}")
            buckets[day["date"]] = {k: v for k, v in day.items() if k != "date"}
        return buckets

    def bucket(self, date: str) -> DayBucket:
        """Return the bucket for a date, or an empty one if none exists."""
        return self.daily_buckets.get(date) or DayBucket()

    def is_consistent(self) -> bool:
        """Check that totals equal the bucket sums."""
        return self.total_seconds == sum(
            b.seconds for b in self.daily_buckets.values()
        ) and self.total_sessions == sum(b.sessions for b in self.daily_buckets.values())


class SiteLimit(BaseModel):
    """Daily time budget for a site.

    `blocked` is a UI-facing flag only; nothing here prevents navigation.
    """

    model_config = ConfigDict(populate_by_name=True)

    site_key: str = Field(
        alias="siteKey",
        validation_alias=AliasChoices("siteKey", "site_key", "url"),
        min_length=1,
    )
    daily_limit_minutes: int = Field(
        ge=0,
        alias="dailyLimitMinutes",
        validation_alias=AliasChoices(
            "dailyLimitMinutes", "daily_limit_minutes", "dailyLimit"
        ),
    )
    enabled: bool = True
    blocked: bool = False

    @field_validator("site_key")
    @classmethod
    def _normalize_site_key(cls, value: str) -> str:
        return required_site_key(value)


class NotificationIntent(BaseModel):
    """Request for the presentation layer to show a limit notification."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    site_key: str = Field(alias="siteKey")
    message: str = LIMIT_REACHED_MESSAGE


@dataclass(frozen=True)
class Session:
    """In-progress viewing of one site. Never persisted."""

    site_key: str
    started_at: int
    last_flush_at: int
    target_id: str | None = None
