"""Backup configuration.

The storage core only ever receives these dataclasses through its
constructors. ``BackupConfig.from_env`` is the single place that reads the
process environment and is called by the CLI.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

PRODUCTION_BACKUP_DIR = Path("/var/lib/postgresql/backup/data")
PRODUCTION_SHARED_DIR = Path("/var/lib/postgresql/backup/shared")
DEVELOPMENT_DIR = Path("backup-data")

DEFAULT_REGION = "us-east-1"
DEFAULT_TIMEOUT = 60.0
DEFAULT_RETRY_BASE_DELAY = 1.0


@dataclass
class ObjectStoreConfig:
    """Connection settings for the S3-compatible HTTP client."""

    region: str = DEFAULT_REGION
    endpoint: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""
    force_path_style: bool = False
    use_tls: bool = True
    timeout: float = DEFAULT_TIMEOUT
    max_attempts: int = 1
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY


@dataclass
class S3StorageConfig:
    """Object-storage backend settings (only used when target is "s3")."""

    bucket: str = ""
    prefix: str = ""
    region: str = DEFAULT_REGION
    endpoint: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""
    use_tls: bool = True
    force_path_style: bool = False
    storage_class: str = ""
    max_retries: int = 0  # extra attempts after the first
    timeout: float = DEFAULT_TIMEOUT

    def client_config(self) -> ObjectStoreConfig:
        return ObjectStoreConfig(
            region=self.region,
            endpoint=self.endpoint,
            access_key_id=self.access_key_id,
            secret_access_key=self.secret_access_key,
            session_token=self.session_token,
            force_path_style=self.force_path_style,
            use_tls=self.use_tls,
            timeout=self.timeout,
            max_attempts=max(1, self.max_retries + 1),
        )


@dataclass
class LocalStorageConfig:
    base_path: Path = DEVELOPMENT_DIR


@dataclass
class StorageConfig:
    """Which backend to use and the settings for each."""

    target: str = "local"  # "local" or "s3"
    local: LocalStorageConfig = field(default_factory=LocalStorageConfig)
    s3: S3StorageConfig = field(default_factory=S3StorageConfig)


@dataclass
class DatabaseTarget:
    """Connection parameters handed to pg_dump / pg_restore."""

    name: str
    user: str = "postgres"
    password: str = "postgres"
    host: str = "postgres"
    dbname: str = "postgres"
    port: int = 5432

    def __repr__(self) -> str:
        return f"DatabaseTarget(name={self.name!r}, user={self.user!r}, host={self.host!r}, dbname={self.dbname!r})"


@dataclass
class BackupConfig:
    """Configuration for the backup controller, loaded from environment variables."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    databases: dict[str, DatabaseTarget] = field(default_factory=dict)
    shared_path: Path = DEVELOPMENT_DIR

    # Behavior
    production: bool = False  # MODE=production: scheduled dumps are enabled
    production_server: bool = False  # SERVER=production: shared directories are prepared
    copy_to_shared: bool = False
    interval_hours: int = 24
    dump_hour: int = 3
    dump_timeout: int = 3600

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        production = os.getenv("MODE", "") == "production"
        base_path = PRODUCTION_BACKUP_DIR if production else DEVELOPMENT_DIR
        shared_path = PRODUCTION_SHARED_DIR if production else DEVELOPMENT_DIR

        storage = StorageConfig(
            target=os.getenv("BACKUP_TARGET", "") or "local",
            local=LocalStorageConfig(base_path=base_path),
            s3=S3StorageConfig(
                bucket=os.getenv("S3_BUCKET", ""),
                prefix=os.getenv("S3_PREFIX", ""),
                region=os.getenv("S3_REGION", "") or DEFAULT_REGION,
                endpoint=os.getenv("S3_ENDPOINT", ""),
                access_key_id=os.getenv("S3_ACCESS_KEY_ID", ""),
                secret_access_key=os.getenv("S3_SECRET_ACCESS_KEY", ""),
                session_token=os.getenv("S3_SESSION_TOKEN", ""),
                use_tls=_bool_env("S3_USE_TLS", True),
                force_path_style=_bool_env("S3_FORCE_PATH_STYLE", False),
                storage_class=os.getenv("S3_STORAGE_CLASS", ""),
                max_retries=_int_env("S3_MAX_RETRIES", 0),
            ),
        )

        names = [n.strip() for n in os.getenv("DATABASE_LIST", "").split(",") if n.strip()]
        databases = {name: database_target_from_env(name) for name in names}

        return cls(
            storage=storage,
            databases=databases,
            shared_path=shared_path,
            production=production,
            production_server=os.getenv("SERVER", "") == "production",
            copy_to_shared=_bool_env("COPING_TO_SHARED", False),
            interval_hours=_int_env("BACKUP_INTERVAL_HOURS", 24),
            dump_timeout=_int_env("BACKUP_DUMP_TIMEOUT", 3600),
        )

    @property
    def database_names(self) -> list[str]:
        return list(self.databases)


def database_env_name(database: str, suffix: str) -> str:
    """USERS_POSTGRES_HOST style variable name for a database."""
    return f"{database.replace('-', '_').upper()}_{suffix}"


def database_target_from_env(database: str) -> DatabaseTarget:
    """Read <DB>_POSTGRES_* variables, defaulting each to "postgres"."""

    def get(suffix: str) -> str:
        return os.getenv(database_env_name(database, suffix), "") or "postgres"

    return DatabaseTarget(
        name=database,
        user=get("POSTGRES_USER"),
        password=get("POSTGRES_PASSWORD"),
        host=get("POSTGRES_HOST"),
        dbname=get("POSTGRES_DB"),
        port=_int_env(database_env_name(database, "POSTGRES_PORT"), 5432),
    )


def _bool_env(key: str, default: bool) -> bool:
    value = os.getenv(key, "").strip().lower()
    if not value:
        return default
    if value in ("1", "t", "true", "yes", "y", "on"):
        return True
    if value in ("0", "f", "false", "no", "n", "off"):
        return False
    logger.warning(f"Ignoring unparsable boolean {key}={value!r}, using {default}")
    return default


def _int_env(key: str, default: int) -> int:
    value = os.getenv(key, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring unparsable integer {key}={value!r}, using {default}")
        return default
