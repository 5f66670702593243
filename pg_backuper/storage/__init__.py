"""Storage providers for backup artifacts."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from pg_backuper.exceptions import ConfigurationError

if TYPE_CHECKING:
    from pg_backuper.config import StorageConfig

ReleaseFunc = Callable[[], None]


@dataclass
class BackupFile:
    """Metadata for a single stored artifact."""

    name: str
    modified: datetime | None  # UTC; None when the backend reported nothing usable
    size: int | None = None


class StorageProvider(Protocol):
    """Capabilities shared by every backup backend."""

    @property
    def name(self) -> str: ...

    def ensure_database(self, database: str) -> None: ...

    def save(self, database: str, filename: str, source_path: Path | str) -> None: ...

    def list(self, database: str) -> list[BackupFile]: ...

    def fetch(self, database: str, filename: str) -> tuple[Path, ReleaseFunc]: ...

    def delete(self, database: str, filename: str) -> None: ...


def create_provider(config: StorageConfig) -> StorageProvider:
    """Create a storage provider based on configuration."""
    target = (config.target or "local").lower()
    if target == "s3":
        from pg_backuper.storage.s3 import ObjectStorageProvider

        return ObjectStorageProvider(config.s3)

    if target == "local":
        from pg_backuper.storage.local import LocalFilesystemProvider

        return LocalFilesystemProvider(config.local.base_path)

    raise ConfigurationError(f"Unsupported backup target: {config.target!r}")


@contextmanager
def fetched(provider: StorageProvider, database: str, filename: str) -> Iterator[Path]:
    """Fetch an artifact to a local path and release it when the block exits."""
    path, release = provider.fetch(database, filename)
    try:
        yield path
    finally:
        release()
