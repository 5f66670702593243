"""Tiered retention for backup artifacts.

Artifacts are named ``file_<classification>_<timestamp>.dump``. Each
classification has its own maximum age; anything that does not parse, or
has a classification without a rule, is kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from pg_backuper.exceptions import BackuperError

if TYPE_CHECKING:
    from pg_backuper.storage import StorageProvider

logger = logging.getLogger(__name__)

RETENTION_RULES: dict[str, timedelta] = {
    "daily": timedelta(days=7),
    "weekly": timedelta(days=30),
    "monthly": timedelta(days=365),
    "manual": timedelta(days=365),
}


@dataclass
class CleanupReport:
    """Outcome of one retention pass."""

    database: str
    deleted: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # unparsable or unknown classification
    failures: dict[str, BackuperError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def parse_classification(filename: str) -> str | None:
    """Return the second '_'-delimited field, or None if the name has fewer than three."""
    parts = filename.split("_")
    if len(parts) < 3 or not parts[1]:
        return None
    return parts[1]


def max_age_for(classification: str | None) -> timedelta | None:
    if classification is None:
        return None
    return RETENTION_RULES.get(classification)


def is_expired(classification: str | None, modified: datetime | None, now: datetime) -> bool:
    """True when ``modified`` is strictly before now - max_age for the classification."""
    max_age = max_age_for(classification)
    if max_age is None or modified is None:
        return False
    return _aware(modified) < _aware(now) - max_age


def cleanup(provider: StorageProvider, database: str, now: datetime | None = None) -> CleanupReport:
    """Delete expired artifacts for ``database``.

    Deletion is best-effort: a failure on one artifact is recorded in the
    report and the remaining artifacts are still evaluated. A listing
    failure propagates.
    """
    now = now or datetime.now(UTC)
    report = CleanupReport(database=database)

    for entry in provider.list(database):
        classification = parse_classification(entry.name)
        if max_age_for(classification) is None:
            report.skipped.append(entry.name)
            continue

        if not is_expired(classification, entry.modified, now):
            report.kept.append(entry.name)
            continue

        try:
            provider.delete(database, entry.name)
        except BackuperError as e:
            logger.error(f"[{database}] Failed to delete expired backup {entry.name}: {e}")
            report.failures[entry.name] = e
            continue
        logger.info(f"[{database}] Deleted expired {classification} backup: {entry.name}")
        report.deleted.append(entry.name)

    return report


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
