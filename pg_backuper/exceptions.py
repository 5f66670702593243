"""Exception hierarchy for pg-backuper.

Exception Hierarchy:
    BackuperError (base)
    ├── ConfigurationError - invalid or missing settings, raised at construction
    ├── StorageError - a storage operation failed
    │   ├── ArtifactNotFoundError
    │   ├── LocalStorageError - filesystem failures
    │   └── ObjectStoreError - S3-compatible endpoint failures
    │       ├── S3NetworkError (retryable)
    │       └── S3ResponseError
    └── DatabaseCommandError - pg_dump / pg_restore failures

Usage:
    from pg_backuper.exceptions import LocalStorageError

    try:
        os.replace(src, dst)
    except OSError as e:
        raise LocalStorageError("save", dst, e) from e
"""

from __future__ import annotations

RETRYABLE_STATUS_CODES = frozenset({408, 429})
NON_RETRYABLE_SERVER_STATUS_CODES = frozenset({501, 505})


class BackuperError(Exception):
    """Base exception for all pg-backuper errors."""


class ConfigurationError(BackuperError):
    """Settings are missing or invalid. Never retried."""


class StorageError(BackuperError):
    """A storage operation failed.

    Attributes:
        operation: What was being done ("save", "fetch", "put_object", ...)
        target: Path or object key the operation was acting on
        cause: Underlying exception, if any
    """

    def __init__(self, operation: str, target: str, cause: BaseException | str | None = None):
        self.operation = operation
        self.target = str(target)
        self.cause = cause
        message = f"{operation} {self.target} failed"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class ArtifactNotFoundError(StorageError):
    """The requested backup artifact does not exist."""


class LocalStorageError(StorageError):
    """Filesystem failure (permission denied, missing directory, disk full)."""


class ObjectStoreError(StorageError):
    """Failure talking to an S3-compatible endpoint."""


class S3NetworkError(ObjectStoreError):
    """Transport failure (timeout, connection reset, DNS) after all attempts."""

    def __init__(self, operation: str, target: str, cause: BaseException, attempts: int = 1):
        self.attempts = attempts
        super().__init__(operation, target, f"network error after {attempts} attempt(s): {cause!r}")
        self.cause = cause


class S3ResponseError(ObjectStoreError):
    """The endpoint answered with a non-2xx status.

    Attributes:
        status_code: HTTP status
        code: S3 error code from the XML body (e.g. "SignatureDoesNotMatch"), if any
        excerpt: Bounded excerpt of the response body
    """

    def __init__(self, operation: str, target: str, status_code: int, excerpt: str = "", code: str | None = None):
        self.status_code = status_code
        self.code = code
        self.excerpt = excerpt
        detail = f"status={status_code}"
        if code:
            detail += f" code={code}"
        if excerpt:
            detail += f" body={excerpt}"
        super().__init__(operation, target, detail)

    @property
    def retryable(self) -> bool:
        return is_retryable_status(self.status_code)


class DatabaseCommandError(BackuperError):
    """pg_dump or pg_restore exited unsuccessfully or could not be started."""

    def __init__(self, command: str, database: str, detail: str):
        self.command = command
        self.database = database
        self.detail = detail
        super().__init__(f"[{database}] {command} failed: {detail}")


def is_retryable_status(status_code: int) -> bool:
    """True for throttling, request timeout and transient server errors."""
    if status_code in RETRYABLE_STATUS_CODES:
        return True
    return 500 <= status_code <= 599 and status_code not in NON_RETRYABLE_SERVER_STATUS_CODES
