"""S3-compatible object store client with SigV4 signing."""

from pg_backuper.s3client.client import (
    ListObjectsPage,
    ObjectInfo,
    ObjectStoreClient,
    default_endpoint,
    resolve_endpoint,
)
from pg_backuper.s3client.signer import Credentials, SigningContext, sign_request

__all__ = [
    "Credentials",
    "ListObjectsPage",
    "ObjectInfo",
    "ObjectStoreClient",
    "SigningContext",
    "default_endpoint",
    "resolve_endpoint",
    "sign_request",
]
