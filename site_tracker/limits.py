"""Daily site limits and edge-triggered limit notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import pydantic

from site_tracker.aggregates import SiteAggregateStore
from site_tracker.errors import NotFoundError, ValidationError
from site_tracker.gateway import LIMITS, PersistenceGateway
from site_tracker.models import NotificationIntent, SiteLimit, normalize_site_key
from site_tracker.settings import SettingsStore

logger = logging.getLogger(__name__)

NotificationSink = Callable[[NotificationIntent], None]


def log_notification(intent: NotificationIntent) -> None:
    """Default sink: log the intent for whichever presentation layer is listening."""
    logger.warning("Notification for %s: %s", intent.site_key, intent.message)


class LimitStore:
    """CRUD over SiteLimit records, keyed by normalized site key."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    def save(self, limit: SiteLimit) -> SiteLimit:
        """Create or replace a limit."""
        self._gateway.put(LIMITS.name, limit.site_key, limit.model_dump(by_alias=True))
        return limit

    def get(self, site_key: str) -> SiteLimit | None:
        doc = self._gateway.get(LIMITS.name, normalize_site_key(site_key))
        return SiteLimit.model_validate(doc) if doc else None

    def list_all(self) -> list[SiteLimit]:
        return [SiteLimit.model_validate(d) for d in self._gateway.list_all(LIMITS.name)]

    def update(self, site_key: str, **changes: Any) -> SiteLimit:
        """Apply a partial update to an existing limit.

        Args:
            site_key: Site whose limit to change.
            **changes: Any of daily_limit_minutes, enabled, blocked.

        Raises:
            NotFoundError: If the site has no limit.
            ValidationError: If a field is unknown or a value is invalid.
        """
        site_key = normalize_site_key(site_key)
        with self._gateway.transaction():
            existing = self.get(site_key)
            if existing is None:
                raise NotFoundError(LIMITS.name, site_key)
            unknown = set(changes) - {"daily_limit_minutes", "enabled", "blocked"}
            if unknown:
                raise ValidationError(f"Cannot update limit field(s): {', '.join(sorted(unknown))}")
            try:
                updated = SiteLimit.model_validate({**existing.model_dump(), **changes})
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid site limit: {e}") from e
            return self.save(updated)

    def delete(self, site_key: str) -> bool:
        return self._gateway.delete(LIMITS.name, normalize_site_key(site_key))

    def clear(self) -> int:
        return self._gateway.clear(LIMITS.name)

    def mark_blocked(self, site_key: str) -> bool:
        """Set the blocked flag if it is not set yet.

        Returns:
            True only for the call that flipped the flag from False to True.
        """
        with self._gateway.transaction():
            limit = self.get(site_key)
            if limit is None or limit.blocked:
                return False
            self.save(limit.model_copy(update={"blocked": True}))
            return True

    def clear_blocked(self, site_key: str) -> SiteLimit:
        """Explicit user action: clear the blocked flag of one site."""
        return self.update(site_key, blocked=False)

    def reset_blocked(self) -> int:
        """Clear the blocked flag of every limit (the day-rollover action).

        Returns:
            Number of limits that were blocked.
        """
        count = 0
        with self._gateway.transaction():
            for limit in self.list_all():
                if limit.blocked:
                    self.save(limit.model_copy(update={"blocked": False}))
                    count += 1
        if count:
            logger.info("Cleared blocked flag on %d site limit(s)", count)
        return count


class LimitMonitor:
    """Checks a site's daily usage against its limit after every merge.

    The crossing is edge-triggered through SiteLimit.blocked: once a limit is
    blocked, later evaluations stay silent until the flag is cleared by an
    explicit action. The flag is not reset when the date changes.
    """

    def __init__(
        self,
        limits: LimitStore,
        aggregates: SiteAggregateStore,
        settings: SettingsStore,
        notify: NotificationSink = log_notification,
    ) -> None:
        self._limits = limits
        self._aggregates = aggregates
        self._settings = settings
        self._notify = notify

    def evaluate(self, site_key: str, date: str) -> NotificationIntent | None:
        """Evaluate the limit for (site_key, date).

        Returns:
            The notification intent if this call crossed the limit and
            notifications are enabled, otherwise None. A sink that raises is
            logged; the intent is still returned.
        """
        limit = self._limits.get(site_key)
        if limit is None or not limit.enabled:
            return None

        aggregate = self._aggregates.get_by_site(limit.site_key)
        used_seconds = aggregate.bucket(date).seconds if aggregate else 0
        if used_seconds < limit.daily_limit_minutes * 60:
            return None
        if not self._limits.mark_blocked(limit.site_key):
            return None

        logger.info(
            "%s reached its %d minute limit on %s (%ds used)",
            limit.site_key,
            limit.daily_limit_minutes,
            date,
            used_seconds,
        )

        if not self._settings.notifications_enabled():
            logger.debug("Notifications disabled; not notifying for %s", limit.site_key)
            return None

        intent = NotificationIntent(site_key=limit.site_key)
        try:
            self._notify(intent)
        except Exception:
            logger.exception("Notification sink failed for %s", limit.site_key)
        return intent
