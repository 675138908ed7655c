"""Inbound signal records and their dispatch onto a SessionTracker.

A browser binding (or the `track` CLI command) turns host events into these
records: tab activation and update-completion become `activation`, window
focus changes become `focus`, the alarm becomes `tick`, tab close becomes
`removal`.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter

from site_tracker.models import TimeInterval
from site_tracker.tracker import SessionTracker


def _target_id_to_str(value: object) -> object:
    # Browser tab IDs arrive as integers
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


TargetId = Annotated[str, BeforeValidator(_target_id_to_str)]


class _Signal(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    timestamp: int


class ActivationSignal(_Signal):
    type: Literal["activation"] = "activation"
    site_key_or_url: str = Field(
        alias="siteKeyOrUrl",
        validation_alias=AliasChoices("siteKeyOrUrl", "site_key_or_url", "url"),
    )
    target_id: TargetId | None = Field(
        default=None,
        alias="targetId",
        validation_alias=AliasChoices("targetId", "target_id", "tabId"),
    )


class FocusSignal(_Signal):
    """Window focus changed. Gaining focus may carry the now-visible site."""

    type: Literal["focus"] = "focus"
    focused: bool
    site_key_or_url: str | None = Field(
        default=None,
        alias="siteKeyOrUrl",
        validation_alias=AliasChoices("siteKeyOrUrl", "site_key_or_url", "url"),
    )
    target_id: TargetId | None = Field(
        default=None,
        alias="targetId",
        validation_alias=AliasChoices("targetId", "target_id", "tabId"),
    )


class TickSignal(_Signal):
    type: Literal["tick"] = "tick"


class RemovalSignal(_Signal):
    type: Literal["removal"] = "removal"
    target_id: TargetId = Field(
        alias="targetId",
        validation_alias=AliasChoices("targetId", "target_id", "tabId"),
    )


Signal = Annotated[
    Union[ActivationSignal, FocusSignal, TickSignal, RemovalSignal],
    Field(discriminator="type"),
]

signal_adapter: TypeAdapter[Signal] = TypeAdapter(Signal)


def parse_signal(data: object) -> Signal:
    """Validate a decoded JSON object as one of the signal types.

    Raises:
        pydantic.ValidationError: If the object is not a valid signal.
    """
    return signal_adapter.validate_python(data)


def dispatch(tracker: SessionTracker, signal: Signal) -> TimeInterval | None:
    """Route one signal to the matching tracker transition.

    Returns:
        The interval the transition flushed, if any.
    """
    if isinstance(signal, ActivationSignal):
        return tracker.on_site_activated(
            signal.site_key_or_url, signal.timestamp, target_id=signal.target_id
        )
    if isinstance(signal, FocusSignal):
        if signal.focused and signal.site_key_or_url:
            return tracker.on_site_activated(
                signal.site_key_or_url, signal.timestamp, target_id=signal.target_id
            )
        if not signal.focused:
            return tracker.on_focus_lost(signal.timestamp)
        # Focus regained with no known site: nothing to start
        return None
    if isinstance(signal, TickSignal):
        return tracker.on_periodic_tick(signal.timestamp)
    return tracker.on_tracked_target_removed(signal.target_id, signal.timestamp)
