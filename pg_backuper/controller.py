"""Dump, restore, list and cleanup orchestration on top of a storage provider."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from pg_backuper.config import BackupConfig, DatabaseTarget
from pg_backuper.database import DumpExecutor, PgDumpExecutor, PgRestoreExecutor, RestoreExecutor
from pg_backuper.exceptions import BackuperError, ConfigurationError, LocalStorageError
from pg_backuper.retention import CleanupReport, cleanup
from pg_backuper.storage import BackupFile, StorageProvider, fetched

logger = logging.getLogger(__name__)

SHARED_DUMP_NAME = "file.dump"
ALL_DATABASES = "--all"


def artifact_name(classification: str, now: datetime | None = None) -> str:
    """file_<classification>_<RFC3339 UTC>.dump"""
    now = (now or datetime.now(UTC)).astimezone(UTC)
    return f"file_{classification}_{now.strftime('%Y-%m-%dT%H:%M:%SZ')}.dump"


def backup_type_for(now: datetime) -> str:
    """monthly on the 1st, weekly on Saturdays, daily otherwise."""
    if now.day == 1:
        return "monthly"
    if now.weekday() == 5:
        return "weekly"
    return "daily"


@dataclass
class DumpResult:
    database: str
    filename: str
    error: BackuperError | None = None
    cleanup: CleanupReport | None = None
    cleanup_error: BackuperError | None = None  # retention listing failed after a successful save

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DumpSummary:
    results: list[DumpResult] = field(default_factory=list)

    @property
    def failures(self) -> list[DumpResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failures


class BackupController:
    """Runs dump/restore commands for the configured databases.

    The pg_dump / pg_restore executors are injected so the storage flow can
    be exercised without PostgreSQL.
    """

    def __init__(
        self,
        config: BackupConfig,
        provider: StorageProvider,
        dumper: DumpExecutor | None = None,
        restorer: RestoreExecutor | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.dumper = dumper or PgDumpExecutor(timeout=config.dump_timeout)
        self.restorer = restorer or PgRestoreExecutor(timeout=config.dump_timeout)

    def resolve(self, database: str) -> list[str]:
        """Expand "--all" to the configured database list."""
        if database == ALL_DATABASES:
            return self.config.database_names
        return [database]

    def target(self, database: str) -> DatabaseTarget:
        return self.config.databases.get(database) or DatabaseTarget(name=database)

    def initialize(self) -> None:
        """Prepare storage (and shared directories on production servers)."""
        for database in self.config.database_names:
            self.provider.ensure_database(database)
            if self.config.production_server:
                shared_dir = Path(self.config.shared_path) / database
                try:
                    shared_dir.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise LocalStorageError("create shared directory", shared_dir, e) from e
        logger.info(f"Initialized {len(self.config.database_names)} database(s) on {self.provider.name}")

    def dump(
        self,
        database: str,
        classification: str = "manual",
        copy_to_shared: bool = False,
        now: datetime | None = None,
    ) -> DumpSummary:
        """Dump, store and apply retention for each database.

        A failing database is recorded and the next one is still processed.
        Retention problems after a successful save are reported on the result
        but do not mark the backup as failed.
        """
        now = now or datetime.now(UTC)
        filename = artifact_name(classification, now)
        summary = DumpSummary()

        for name in self.resolve(database):
            result = DumpResult(database=name, filename=filename)
            summary.results.append(result)
            try:
                self._dump_one(name, filename, copy_to_shared)
            except BackuperError as e:
                logger.error(f"[{name}] Backup failed: {e}")
                result.error = e
                continue

            try:
                result.cleanup = cleanup(self.provider, name, now)
            except BackuperError as e:
                logger.error(f"[{name}] Retention failed after backup: {e}")
                result.cleanup_error = e

        logger.info(
            f"Backup complete: {len(summary.results) - len(summary.failures)} succeeded, "
            f"{len(summary.failures)} failed"
        )
        return summary

    def _dump_one(self, database: str, filename: str, copy_to_shared: bool) -> None:
        fd, temp_name = tempfile.mkstemp(prefix="pgdump-", suffix=".dump")
        os.close(fd)
        temp_path = Path(temp_name)
        try:
            self.dumper.dump(self.target(database), temp_path)
            if copy_to_shared:
                self.copy_to_shared(temp_path, database)
            self.provider.save(database, filename, temp_path)
        finally:
            temp_path.unlink(missing_ok=True)

    def copy_to_shared(self, source: Path, database: str) -> Path:
        destination = Path(self.config.shared_path) / database / SHARED_DUMP_NAME
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with open(source, "rb") as src, open(destination, "wb") as dst:
                shutil.copyfileobj(src, dst)
                dst.flush()
                os.fsync(dst.fileno())
        except OSError as e:
            raise LocalStorageError("copy to shared", destination, e) from e
        logger.info(f"[{database}] Copied dump to {destination}")
        return destination

    def restore(self, database: str, filename: str) -> None:
        for name in self.resolve(database):
            with fetched(self.provider, name, filename) as path:
                self.restorer.restore(self.target(name), path)

    def restore_from_shared(self, database: str) -> None:
        for name in self.resolve(database):
            path = Path(self.config.shared_path) / name / SHARED_DUMP_NAME
            if not path.is_file():
                raise ConfigurationError(f"[{name}] No shared dump at {path}")
            self.restorer.restore(self.target(name), path)

    def list(self, database: str) -> list[BackupFile]:
        """Artifacts for a database, newest first; undated entries last."""
        entries = self.provider.list(database)
        epoch = datetime.min.replace(tzinfo=UTC)
        return sorted(entries, key=lambda e: (e.modified or epoch, e.name), reverse=True)

    def cleanup(self, database: str, now: datetime | None = None) -> list[CleanupReport]:
        return [cleanup(self.provider, name, now) for name in self.resolve(database)]
