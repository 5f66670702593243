"""Database operations: pg_dump and pg_restore invocation."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from pg_backuper.exceptions import DatabaseCommandError

if TYPE_CHECKING:
    from pg_backuper.config import DatabaseTarget

logger = logging.getLogger(__name__)

STDERR_EXCERPT = 500


class DumpExecutor(Protocol):
    def dump(self, target: DatabaseTarget, output_path: Path) -> None: ...


class RestoreExecutor(Protocol):
    def restore(self, target: DatabaseTarget, dump_path: Path) -> None: ...


def _pg_env(target: DatabaseTarget) -> dict[str, str]:
    env = os.environ.copy()
    env["PGPASSWORD"] = target.password
    env["PGDATABASE"] = target.dbname
    return env


def _run(command: list[str], target: DatabaseTarget, timeout: int) -> None:
    name = command[0]
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            env=_pg_env(target),
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise DatabaseCommandError(name, target.name, f"{name} not found - install postgresql-client") from e
    except subprocess.TimeoutExpired as e:
        raise DatabaseCommandError(name, target.name, f"timed out after {timeout}s") from e

    if result.returncode != 0:
        stderr = result.stderr.decode(errors="replace").strip()[:STDERR_EXCERPT]
        raise DatabaseCommandError(name, target.name, f"exit code {result.returncode}: {stderr}")


class PgDumpExecutor:
    """Write a custom-format dump (pg_dump -c -Fc) to a local file."""

    def __init__(self, timeout: int = 3600) -> None:
        self.timeout = timeout

    def command(self, target: DatabaseTarget, output_path: Path) -> list[str]:
        return [
            "pg_dump",
            "-c",
            "-Fc",
            "-U",
            target.user,
            "-h",
            target.host,
            "-p",
            str(target.port),
            "-f",
            str(output_path),
        ]

    def dump(self, target: DatabaseTarget, output_path: Path) -> None:
        logger.info(f"[{target.name}] Starting dump of {target.dbname}@{target.host}")
        _run(self.command(target, output_path), target, self.timeout)
        size = Path(output_path).stat().st_size
        logger.info(f"[{target.name}] Dump complete: {size:,} bytes")


class PgRestoreExecutor:
    """Restore a custom-format dump with pg_restore -c."""

    def __init__(self, timeout: int = 3600) -> None:
        self.timeout = timeout

    def command(self, target: DatabaseTarget, dump_path: Path) -> list[str]:
        return [
            "pg_restore",
            "-c",
            "-U",
            target.user,
            "-h",
            target.host,
            "-p",
            str(target.port),
            "-d",
            target.dbname,
            str(dump_path),
        ]

    def restore(self, target: DatabaseTarget, dump_path: Path) -> None:
        logger.info(f"[{target.name}] Restoring {Path(dump_path).name} into {target.dbname}@{target.host}")
        _run(self.command(target, dump_path), target, self.timeout)
        logger.info(f"[{target.name}] Restore completed successfully")
