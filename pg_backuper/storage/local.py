"""Local filesystem storage backend."""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from pg_backuper.exceptions import ArtifactNotFoundError, LocalStorageError
from pg_backuper.storage import BackupFile, ReleaseFunc

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"


class LocalFilesystemProvider:
    """Store backups as <base_path>/<database>/<filename>."""

    def __init__(self, base_path: Path | str) -> None:
        self.base_path = Path(base_path)

    @property
    def name(self) -> str:
        return f"local:{self.base_path}"

    def _db_dir(self, database: str) -> Path:
        return self.base_path / database

    def ensure_database(self, database: str) -> None:
        directory = self._db_dir(database)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LocalStorageError("create directory", directory, e) from e

    def save(self, database: str, filename: str, source_path: Path | str) -> None:
        """Move the artifact into place, copying when a rename is not possible.

        The copy goes to a staging file in the destination directory, is
        fsynced, and only then renamed to the final name.
        """
        source = Path(source_path)
        self.ensure_database(database)
        destination = self._db_dir(database) / filename

        try:
            os.replace(source, destination)
            logger.info(f"[{database}] Saved {filename} to {destination}")
            return
        except OSError as e:
            if not source.is_file():
                raise LocalStorageError("save", source, e) from e
            logger.debug(f"[{database}] Rename into {destination} failed ({e}), copying instead")

        _copy_into_place(source, destination)
        try:
            source.unlink()
        except OSError as e:
            raise LocalStorageError("remove source", source, e) from e
        logger.info(f"[{database}] Copied {filename} to {destination}")

    def list(self, database: str) -> list[BackupFile]:
        directory = self._db_dir(database)
        if not directory.exists():
            return []

        entries: list[BackupFile] = []
        try:
            for f in directory.iterdir():
                if not f.is_file() or f.name.startswith(STAGING_PREFIX):
                    continue
                info = f.stat()
                entries.append(
                    BackupFile(
                        name=f.name,
                        modified=datetime.fromtimestamp(info.st_mtime, tz=UTC),
                        size=info.st_size,
                    )
                )
        except OSError as e:
            raise LocalStorageError("list", directory, e) from e
        return entries

    def fetch(self, database: str, filename: str) -> tuple[Path, ReleaseFunc]:
        path = self._db_dir(database) / filename
        try:
            mode = path.stat().st_mode
        except FileNotFoundError as e:
            raise ArtifactNotFoundError("fetch", path, e) from e
        except OSError as e:
            raise LocalStorageError("fetch", path, e) from e
        if not stat.S_ISREG(mode):
            raise ArtifactNotFoundError("fetch", path, "not a regular file")
        return path, _noop_release

    def delete(self, database: str, filename: str) -> None:
        path = self._db_dir(database) / filename
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise ArtifactNotFoundError("delete", path, e) from e
        except OSError as e:
            raise LocalStorageError("delete", path, e) from e
        logger.info(f"[{database}] Deleted {path}")


def _copy_into_place(source: Path, destination: Path) -> None:
    fd, staging_name = tempfile.mkstemp(prefix=STAGING_PREFIX, dir=destination.parent)
    staging = Path(staging_name)
    try:
        with open(source, "rb") as src, os.fdopen(fd, "wb") as dst:
            shutil.copyfileobj(src, dst)
            dst.flush()
            os.fsync(dst.fileno())
        shutil.copymode(source, staging)
        os.replace(staging, destination)
    except OSError as e:
        staging.unlink(missing_ok=True)
        raise LocalStorageError("copy", destination, e) from e


def _noop_release() -> None:
    pass
