"""User settings: a closed record over an opaque key/value table."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from site_tracker.errors import ValidationError
from site_tracker.gateway import SETTINGS, PersistenceGateway

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    """Known settings and their defaults."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    notifications: bool = True
    daily_reminder: bool = Field(default=True, alias="dailyReminder")
    pomodoro_enabled: bool = Field(default=False, alias="pomodoroEnabled")
    pomodoro_time: int = Field(default=25, alias="pomodoroTime")
    break_time: int = Field(default=5, alias="breakTime")
    dark_mode: bool = Field(default=False, alias="darkMode")
    language: str = "en"


def _boolean(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"Setting '{key}' must be true or false, got {value!r}")
    return value


def _minutes(key: str, value: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(
            f"Setting '{key}' must be a whole number of minutes >= 1, got {value!r}"
        )
    return value


def _language(key: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Setting '{key}' must be a non-empty string, got {value!r}")
    return value.strip()


FIELD_RULES: dict[str, Callable[[str, Any], Any]] = {
    "notifications": _boolean,
    "dailyReminder": _boolean,
    "pomodoroEnabled": _boolean,
    "pomodoroTime": _minutes,
    "breakTime": _minutes,
    "darkMode": _boolean,
    "language": _language,
}


def merge_settings(base: Settings, overrides: Mapping[str, Any]) -> Settings:
    """Apply overrides (keyed by stored camelCase name) on top of base.

    Rules per field:
    - None keeps the base value
    - boolean fields accept only True/False
    - pomodoroTime and breakTime accept integers >= 1
    - language accepts a non-empty string (stripped)
    - unknown keys are ignored

    Raises:
        ValidationError: If a known key has a value its rule rejects.
    """
    values = base.model_dump(by_alias=True)
    for key, value in overrides.items():
        rule = FIELD_RULES.get(key)
        if rule is None or value is None:
            continue
        values[key] = rule(key, value)
    return Settings.model_validate(values)


class SettingsStore:
    """Settings persisted as one row per key.

    Unknown keys are stored as-is for collaborators; only the keys of
    Settings are validated and interpreted.
    """

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    def as_dict(self) -> dict[str, Any]:
        """Raw stored key/value pairs (no defaults filled in)."""
        return {doc["key"]: doc["value"] for doc in self._gateway.list_all(SETTINGS.name)}

    def load(self) -> Settings:
        """Defaults overlaid with every valid stored value.

        A stored value that fails its rule is logged and ignored rather than
        breaking every reader.
        """
        settings = Settings()
        for key, value in self.as_dict().items():
            try:
                settings = merge_settings(settings, {key: value})
            except ValidationError as e:
                logger.warning("Ignoring stored setting: %s", e)
        return settings

    def get(self, key: str) -> Any:
        """Effective value of a setting: stored, else default, else None."""
        doc = self._gateway.get(SETTINGS.name, key)
        if doc is not None and doc.get("value") is not None:
            return doc["value"]
        if key in FIELD_RULES:
            return self.load().model_dump(by_alias=True)[key]
        return None

    def set(self, key: str, value: Any) -> None:
        """Store one setting. None removes it, restoring the default.

        Raises:
            ValidationError: If key is empty or value is invalid for a known key.
        """
        if not key:
            raise ValidationError("Setting key must not be empty")
        if value is None:
            self._gateway.delete(SETTINGS.name, key)
            return
        if key in FIELD_RULES:
            value = FIELD_RULES[key](key, value)
        self._gateway.put(SETTINGS.name, key, {"key": key, "value": value})

    def reset(self) -> int:
        """Remove every stored setting. Returns the number removed."""
        return self._gateway.clear(SETTINGS.name)

    def notifications_enabled(self) -> bool:
        return self.load().notifications
