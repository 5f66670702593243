"""S3-compatible storage backend (AWS, MinIO, Wasabi, ...)."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from pg_backuper.exceptions import ArtifactNotFoundError, ConfigurationError, LocalStorageError, S3ResponseError
from pg_backuper.s3client import ObjectStoreClient
from pg_backuper.storage import BackupFile, ReleaseFunc

if TYPE_CHECKING:
    from pg_backuper.config import S3StorageConfig

logger = logging.getLogger(__name__)

TEMP_PREFIX = "s3-backup-"
TEMP_SUFFIX = ".dump"


def normalize_prefix(prefix: str) -> str:
    return (prefix or "").strip().strip("/")


def object_key(prefix: str, database: str, filename: str = "") -> str:
    """Join [prefix/]database/filename with surrounding slashes trimmed."""
    parts = []
    prefix = normalize_prefix(prefix)
    if prefix:
        parts.append(prefix)
    parts.append(database.strip("/"))
    parts.append(filename)
    return "/".join(parts)


class ObjectStorageProvider:
    """Store backups in an S3-compatible bucket under <prefix/>database/filename."""

    def __init__(self, config: S3StorageConfig, client: ObjectStoreClient | None = None) -> None:
        if not config.bucket:
            raise ConfigurationError("S3 bucket is required")
        self.bucket = config.bucket
        self.prefix = normalize_prefix(config.prefix)
        self.storage_class = config.storage_class
        self.client = client or ObjectStoreClient(config.client_config())

    @property
    def name(self) -> str:
        return f"s3:{self.bucket}"

    def ensure_database(self, database: str) -> None:
        pass

    def save(self, database: str, filename: str, source_path: Path | str) -> None:
        key = object_key(self.prefix, database, filename)
        headers = {"x-amz-storage-class": self.storage_class} if self.storage_class else None
        try:
            f = open(source_path, "rb")
        except OSError as e:
            raise LocalStorageError("open", source_path, e) from e
        with f:
            size = os.fstat(f.fileno()).st_size
            self.client.put_object(self.bucket, key, f, content_length=size, headers=headers)
        logger.info(f"[{database}] Uploaded to s3://{self.bucket}/{key}")

    def list(self, database: str) -> list[BackupFile]:
        prefix = object_key(self.prefix, database)
        entries: list[BackupFile] = []
        for obj in self.client.iter_objects(self.bucket, prefix):
            name = obj.key[len(prefix) :] if obj.key.startswith(prefix) else ""
            if not name or "/" in name:
                continue
            entries.append(BackupFile(name=name, modified=obj.last_modified, size=obj.size))
        return entries

    def fetch(self, database: str, filename: str) -> tuple[Path, ReleaseFunc]:
        """Download into a temporary file; the release callable removes it."""
        key = object_key(self.prefix, database, filename)
        fd, temp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX)
        path = Path(temp_name)

        def release() -> None:
            path.unlink(missing_ok=True)

        try:
            with os.fdopen(fd, "wb") as out:
                with self.client.get_object(self.bucket, key) as chunks:
                    for chunk in chunks:
                        out.write(chunk)
                out.flush()
                os.fsync(out.fileno())
        except S3ResponseError as e:
            release()
            if e.status_code == 404:
                raise ArtifactNotFoundError("fetch", f"s3://{self.bucket}/{key}", e) from e
            raise
        except OSError as e:
            release()
            raise LocalStorageError("download", path, e) from e
        except BaseException:
            release()
            raise

        logger.info(f"[{database}] Downloaded s3://{self.bucket}/{key} to {path}")
        return path, release

    def delete(self, database: str, filename: str) -> None:
        key = object_key(self.prefix, database, filename)
        self.client.delete_object(self.bucket, key)
        logger.info(f"[{database}] Deleted s3://{self.bucket}/{key}")
