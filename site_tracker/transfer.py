"""Export and import of the whole data document.

Document shape:
    {"tabs": [SiteAggregate], "timeIntervals": [TimeInterval],
     "siteLimits": [SiteLimit], "settings": {key: value}}
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import pydantic

from site_tracker.core import TrackerCore
from site_tracker.errors import ValidationError
from site_tracker.models import SiteAggregate, SiteLimit

logger = logging.getLogger(__name__)

COLLECTIONS = {
    "tabs": list,
    "timeIntervals": list,
    "siteLimits": list,
    "settings": dict,
}


@dataclass
class ImportReport:
    """Per-collection counts from one import."""

    tabs: int = 0
    time_intervals: int = 0
    site_limits: int = 0
    settings: int = 0
    skipped: int = 0
    problems: list[str] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return self.tabs + self.time_intervals + self.site_limits + self.settings

    def skip(self, location: str, error: Exception) -> None:
        self.skipped += 1
        self.problems.append(f"{location}: {error}")
        logger.warning("Skipping %s: %s", location, error)


def export_data(core: TrackerCore) -> dict[str, Any]:
    """Snapshot every collection as a JSON-ready document."""
    return {
        "tabs": [a.model_dump(by_alias=True) for a in core.aggregates.list_all()],
        "timeIntervals": [i.model_dump(by_alias=True) for i in core.intervals.list_all()],
        "siteLimits": [lim.model_dump(by_alias=True) for lim in core.limits.list_all()],
        "settings": core.settings.as_dict(),
    }


def import_data(core: TrackerCore, document: Mapping[str, Any]) -> ImportReport:
    """Load a document produced by export_data (or the browser extension).

    Each collection is applied independently; a missing collection leaves the
    stored one untouched. Invalid records are skipped and counted, valid ones
    are upserted by key.

    Raises:
        ValidationError: If the document or one of its collections has the
            wrong shape. Nothing is written in that case.
        PersistenceError: If a write fails. Records already imported stay.
    """
    if not isinstance(document, Mapping):
        raise ValidationError("Import document must be a JSON object")
    for name, expected in COLLECTIONS.items():
        value = document.get(name)
        if value is not None and not isinstance(value, expected):
            raise ValidationError(f"'{name}' must be a JSON {expected.__name__}")

    report = ImportReport()

    for index, record in enumerate(document.get("tabs") or []):
        try:
            core.aggregates.restore(SiteAggregate.model_validate(record))
            report.tabs += 1
        except (pydantic.ValidationError, ValidationError) as e:
            report.skip(f"tabs[{index}]", e)

    for index, record in enumerate(document.get("timeIntervals") or []):
        if not isinstance(record, Mapping):
            report.skip(f"timeIntervals[{index}]", ValidationError("not an object"))
            continue
        try:
            core.intervals.append(record)
            report.time_intervals += 1
        except ValidationError as e:
            report.skip(f"timeIntervals[{index}]", e)

    for index, record in enumerate(document.get("siteLimits") or []):
        try:
            core.limits.save(SiteLimit.model_validate(record))
            report.site_limits += 1
        except pydantic.ValidationError as e:
            report.skip(f"siteLimits[{index}]", e)

    for key, value in (document.get("settings") or {}).items():
        try:
            core.settings.set(key, value)
            report.settings += 1
        except ValidationError as e:
            report.skip(f"settings.{key}", e)

    logger.info("Imported %d records, skipped %d", report.imported, report.skipped)
    return report
