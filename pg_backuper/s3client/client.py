"""Minimal S3-compatible object store client.

Signs every request with SigV4 (see ``signer``) and sends it with httpx.
Covers exactly what the backup storage needs: PutObject, GetObject,
DeleteObject and ListObjectsV2 with a pagination helper.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import BinaryIO
from urllib.parse import urlsplit
from xml.etree import ElementTree

import httpx

from pg_backuper.config import ObjectStoreConfig
from pg_backuper.exceptions import (
    ConfigurationError,
    ObjectStoreError,
    S3NetworkError,
    S3ResponseError,
)
from pg_backuper.s3client.signer import (
    EMPTY_PAYLOAD_HASH,
    Credentials,
    amz_date,
    canonical_query_string,
    canonical_uri,
    hash_payload,
    sign_request,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
ERROR_EXCERPT_LIMIT = 512

_ERROR_CODE = re.compile(r"<Code>\s*([^<]+?)\s*</Code>")


@dataclass
class ObjectInfo:
    """One entry of a ListObjectsV2 page."""

    key: str
    last_modified: datetime | None = None
    size: int | None = None


@dataclass
class ListObjectsPage:
    objects: list[ObjectInfo] = field(default_factory=list)
    is_truncated: bool = False
    next_continuation_token: str | None = None


def default_endpoint(region: str, use_tls: bool) -> str:
    """AWS endpoint for a region: the global one for us-east-1, regional otherwise."""
    scheme = "https" if use_tls else "http"
    host = "s3.amazonaws.com" if region == "us-east-1" else f"s3.{region}.amazonaws.com"
    return f"{scheme}://{host}"


def resolve_endpoint(endpoint: str, region: str, use_tls: bool) -> str:
    """Normalize the configured endpoint into scheme://host[:port][/base]."""
    endpoint = (endpoint or "").strip()
    if not endpoint:
        return default_endpoint(region, use_tls)
    if "://" not in endpoint:
        endpoint = f"{'https' if use_tls else 'http'}://{endpoint}"

    parts = urlsplit(endpoint)
    try:
        parts.port
    except ValueError as e:
        raise ConfigurationError(f"Invalid S3 endpoint {endpoint!r}: {e}") from e
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigurationError(f"Invalid S3 endpoint {endpoint!r}")
    return f"{parts.scheme}://{parts.netloc}{parts.path.rstrip('/')}"


class ObjectStoreClient:
    """HTTP client for an S3-compatible endpoint.

    Safe for sequential reuse. Each request is signed at send time, retried
    up to ``max_attempts`` times for transport errors, 408, 429 and 5xx
    (except 501/505), sleeping ``attempt * retry_base_delay`` between tries.

    Usage:
        client = ObjectStoreClient(ObjectStoreConfig(region="eu-west-1", ...))
        client.put_object("bucket", "users/file.dump", open(path, "rb"))
        with client.get_object("bucket", "users/file.dump") as chunks:
            for chunk in chunks:
                out.write(chunk)
    """

    def __init__(
        self,
        config: ObjectStoreConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not config.region:
            raise ConfigurationError("S3 region is required")
        if not config.access_key_id or not config.secret_access_key:
            raise ConfigurationError("S3 access key id and secret access key are required")
        if config.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be at least 1, got {config.max_attempts}")

        endpoint = urlsplit(resolve_endpoint(config.endpoint, config.region, config.use_tls))
        self.scheme = endpoint.scheme
        self.host = endpoint.netloc
        self.base_path = endpoint.path
        self.region = config.region
        self.force_path_style = config.force_path_style
        self.max_attempts = config.max_attempts
        self.retry_base_delay = config.retry_base_delay
        self.credentials = Credentials(
            config.access_key_id,
            config.secret_access_key,
            config.session_token or None,
        )
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self._http = httpx.Client(timeout=httpx.Timeout(config.timeout), transport=transport)

    @property
    def endpoint(self) -> str:
        return f"{self.scheme}://{self.host}{self.base_path}"

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> ObjectStoreClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # =========================================================================
    # Object operations
    # =========================================================================

    def put_object(
        self,
        bucket: str,
        key: str,
        body: bytes | BinaryIO,
        content_length: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Upload ``body`` in a single request.

        File bodies are hashed by streaming and rewound before every attempt.
        """
        if isinstance(body, (bytes, bytearray)):
            data = bytes(body)
            payload_hash, length = hash_payload(data), len(data)

            def content() -> bytes:
                return data

        else:
            payload_hash, length = _hash_stream(body)

            def content() -> Iterator[bytes]:
                return _read_chunks(body)

        if content_length is not None and content_length != length:
            raise ValueError(f"content_length {content_length} does not match body size {length}")

        response = self._send(
            "put_object",
            "PUT",
            bucket,
            key,
            content=content,
            payload_hash=payload_hash,
            content_length=length,
            extra_headers=headers,
        )
        response.close()
        logger.debug(f"Uploaded {length:,} bytes to {self._describe(bucket, key)}")

    @contextmanager
    def get_object(self, bucket: str, key: str, chunk_size: int = CHUNK_SIZE) -> Iterator[Iterator[bytes]]:
        """Stream an object. Yields an iterator of byte chunks; closes the response on exit."""
        response = self._send("get_object", "GET", bucket, key, stream=True)
        try:
            yield _iter_body(response, chunk_size, self._describe(bucket, key))
        finally:
            response.close()

    def delete_object(self, bucket: str, key: str) -> None:
        response = self._send("delete_object", "DELETE", bucket, key)
        response.close()

    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        continuation_token: str | None = None,
    ) -> ListObjectsPage:
        """Fetch one ListObjectsV2 page."""
        query = [("list-type", "2")]
        if prefix:
            query.append(("prefix", prefix))
        if continuation_token:
            query.append(("continuation-token", continuation_token))

        response = self._send("list_objects", "GET", bucket, "", query=query)
        try:
            return parse_list_objects(response.content)
        except ValueError as e:
            raise ObjectStoreError("list_objects", self._describe(bucket, prefix), f"decode list response: {e}") from e
        finally:
            response.close()

    def iter_objects(self, bucket: str, prefix: str = "") -> Iterator[ObjectInfo]:
        """Walk every page of a listing, yielding each key once."""
        seen: set[str] = set()
        used_tokens: set[str] = set()
        token: str | None = None
        while True:
            page = self.list_objects(bucket, prefix, token)
            for obj in page.objects:
                if obj.key in seen:
                    continue
                seen.add(obj.key)
                yield obj

            if not page.is_truncated or not page.next_continuation_token:
                return
            if page.next_continuation_token in used_tokens:
                raise ObjectStoreError(
                    "list_objects",
                    self._describe(bucket, prefix),
                    f"continuation token repeated: {page.next_continuation_token!r}",
                )
            used_tokens.add(page.next_continuation_token)
            token = page.next_continuation_token

    # =========================================================================
    # Request plumbing
    # =========================================================================

    def build_url(self, bucket: str, key: str = "", query: list[tuple[str, str]] | None = None) -> tuple[str, str]:
        """Return (url, host) for a bucket/key in the configured addressing mode."""
        if not bucket:
            raise ConfigurationError("S3 bucket is required")
        key = key.lstrip("/")
        if self.force_path_style:
            host = self.host
            path = f"{self.base_path}/{bucket}"
            if key:
                path += f"/{key}"
        else:
            host = f"{bucket}.{self.host}"
            path = f"{self.base_path}/{key}"

        url = f"{self.scheme}://{host}{canonical_uri(path)}"
        query_string = canonical_query_string(query)
        if query_string:
            url += f"?{query_string}"
        return url, host

    def _send(
        self,
        operation: str,
        method: str,
        bucket: str,
        key: str,
        *,
        query: list[tuple[str, str]] | None = None,
        content: Callable[[], bytes | Iterator[bytes]] | None = None,
        payload_hash: str = EMPTY_PAYLOAD_HASH,
        content_length: int | None = None,
        extra_headers: dict[str, str] | None = None,
        stream: bool = False,
    ) -> httpx.Response:
        url, host = self.build_url(bucket, key, query)
        target = self._describe(bucket, key)

        for attempt in range(1, self.max_attempts + 1):
            request = self._signed_request(
                method,
                url,
                host,
                payload_hash,
                content() if content else None,
                content_length,
                extra_headers,
            )
            try:
                response = self._http.send(request, stream=stream)
            except httpx.TransportError as e:
                retryable = isinstance(e, (httpx.TimeoutException, httpx.NetworkError))
                if retryable and attempt < self.max_attempts:
                    logger.warning(f"{operation} {target}: attempt {attempt}/{self.max_attempts} failed ({e!r})")
                    self._backoff(attempt)
                    continue
                raise S3NetworkError(operation, target, e, attempts=attempt) from e

            if response.is_success:
                logger.debug(f"{method} {url} -> {response.status_code}")
                return response

            error = _response_error(operation, target, response)
            if error.retryable and attempt < self.max_attempts:
                logger.warning(
                    f"{operation} {target}: attempt {attempt}/{self.max_attempts} got {error.status_code}, retrying"
                )
                self._backoff(attempt)
                continue
            raise error

        raise AssertionError("unreachable")

    def _signed_request(
        self,
        method: str,
        url: str,
        host: str,
        payload_hash: str,
        content: bytes | Iterator[bytes] | None,
        content_length: int | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Request:
        now = self._clock()
        headers = {
            "host": host,
            "x-amz-date": amz_date(now),
            "x-amz-content-sha256": payload_hash,
        }
        if self.credentials.session_token:
            headers["x-amz-security-token"] = self.credentials.session_token
        for name, value in (extra_headers or {}).items():
            headers[name.lower()] = value

        ctx = sign_request(method, url, headers, payload_hash, self.credentials, self.region, now)
        headers["Authorization"] = ctx.authorization
        if content_length is not None:
            headers["Content-Length"] = str(content_length)
        return httpx.Request(method, url, headers=headers, content=content)

    def _backoff(self, attempt: int) -> None:
        delay = attempt * self.retry_base_delay
        if delay > 0:
            self._sleep(delay)

    def _describe(self, bucket: str, key: str) -> str:
        return f"s3://{bucket}/{key.lstrip('/')}"


def parse_list_objects(payload: bytes) -> ListObjectsPage:
    """Parse a ListBucketResult document, with or without the S3 namespace."""
    try:
        root = ElementTree.fromstring(payload)
    except ElementTree.ParseError as e:
        raise ValueError(str(e)) from e
    if _local_name(root.tag) != "ListBucketResult":
        raise ValueError(f"unexpected root element {_local_name(root.tag)!r}")

    page = ListObjectsPage()
    for child in root:
        name = _local_name(child.tag)
        if name == "Contents":
            fields = {_local_name(item.tag): (item.text or "").strip() for item in child}
            key = fields.get("Key", "")
            if not key:
                continue
            size = fields.get("Size")
            page.objects.append(
                ObjectInfo(
                    key=key,
                    last_modified=parse_timestamp(fields.get("LastModified", "")),
                    size=int(size) if size and size.isdigit() else None,
                )
            )
        elif name == "IsTruncated":
            page.is_truncated = (child.text or "").strip().lower() == "true"
        elif name == "NextContinuationToken":
            page.next_continuation_token = (child.text or "").strip() or None
    return page


def parse_timestamp(value: str) -> datetime | None:
    """Parse RFC3339 LastModified values such as 2009-10-12T17:50:30.000Z."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _response_error(operation: str, target: str, response: httpx.Response) -> S3ResponseError:
    try:
        body = response.read()
    except httpx.HTTPError:
        body = b""
    finally:
        response.close()
    text = body.decode("utf-8", errors="replace").strip()
    match = _ERROR_CODE.search(text)
    return S3ResponseError(
        operation,
        target,
        response.status_code,
        excerpt=text[:ERROR_EXCERPT_LIMIT],
        code=match.group(1) if match else None,
    )


def _iter_body(response: httpx.Response, chunk_size: int, target: str) -> Iterator[bytes]:
    try:
        yield from response.iter_bytes(chunk_size)
    except httpx.TransportError as e:
        raise S3NetworkError("get_object", target, e) from e


def _hash_stream(body: BinaryIO) -> tuple[str, int]:
    body.seek(0)
    digest = hashlib.sha256()
    length = 0
    while chunk := body.read(CHUNK_SIZE):
        digest.update(chunk)
        length += len(chunk)
    body.seek(0)
    return digest.hexdigest(), length


def _read_chunks(body: BinaryIO) -> Iterator[bytes]:
    body.seek(0)
    while chunk := body.read(CHUNK_SIZE):
        yield chunk


def _local_name(tag: str) -> str:
    return tag.rpartition("}")[2]
