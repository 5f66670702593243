"""AWS Signature Version 4 request signing for S3.

Pure functions only: nothing here performs I/O or reads the clock. The
caller supplies the timestamp so that signatures are reproducible.

Usage:
    ctx = sign_request(
        "GET",
        "https://bucket.s3.amazonaws.com/key",
        {"x-amz-content-sha256": EMPTY_PAYLOAD_HASH, "x-amz-date": amz_date},
        EMPTY_PAYLOAD_HASH,
        Credentials("AKID", "SECRET"),
        "us-east-1",
        timestamp,
    )
    headers["Authorization"] = ctx.authorization
"""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import unquote, urlsplit

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"
TERMINATOR = "aws4_request"
EMPTY_PAYLOAD_HASH = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

_UNRESERVED = frozenset(b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_.~")
_WHITESPACE_RUN = re.compile(r"\s+")


@dataclass(frozen=True)
class Credentials:
    """Static access key pair, with an optional session token for temporary credentials."""

    access_key_id: str
    secret_access_key: str
    session_token: str | None = None

    def __repr__(self) -> str:
        return f"Credentials(access_key_id={self.access_key_id!r}, secret_access_key='****')"


@dataclass(frozen=True)
class SigningContext:
    """Everything computed while signing one request. Never reused."""

    amz_date: str
    date_stamp: str
    credential_scope: str
    canonical_request: str
    string_to_sign: str
    signed_headers: str
    signature: str
    authorization: str


def amz_date(timestamp: datetime) -> str:
    """Format as the ISO8601 basic form used by x-amz-date (20130524T000000Z)."""
    return _as_utc(timestamp).strftime("%Y%m%dT%H%M%SZ")


def date_stamp(timestamp: datetime) -> str:
    return _as_utc(timestamp).strftime("%Y%m%d")


def uri_encode(value: str, encode_slash: bool = True) -> str:
    """Percent-encode per the SigV4 rules.

    Unreserved characters are kept, '/' is kept only when encode_slash is
    False, everything else becomes %XX over its UTF-8 bytes (space is %20).
    """
    out = []
    for byte in value.encode("utf-8"):
        if byte in _UNRESERVED or (byte == 0x2F and not encode_slash):
            out.append(chr(byte))
        else:
            out.append(f"%{byte:02X}")
    return "".join(out)


def canonical_uri(path: str) -> str:
    """Encode each path segment, keeping '/' separators."""
    if not path:
        return "/"
    if not path.startswith("/"):
        path = "/" + path
    return uri_encode(path, encode_slash=False)


def canonical_query_string(params: list[tuple[str, str]] | dict[str, str] | None) -> str:
    """Sort encoded pairs by key then value and join them with '&'."""
    if not params:
        return ""
    items = params.items() if isinstance(params, dict) else params
    encoded = sorted((uri_encode(k), uri_encode(v if v is not None else "")) for k, v in items)
    return "&".join(f"{k}={v}" for k, v in encoded)


def parse_query(query: str) -> list[tuple[str, str]]:
    """Split a raw (possibly percent-encoded) query string into decoded pairs."""
    pairs = []
    for part in query.split("&"):
        if not part:
            continue
        key, _, value = part.partition("=")
        pairs.append((unquote(key), unquote(value)))
    return pairs


def canonical_headers(headers: dict[str, str]) -> tuple[str, str]:
    """Return (canonical header block, signed header list).

    Names are lower-cased and sorted; values are trimmed with runs of
    whitespace folded to a single space.
    """
    normalized: dict[str, str] = {}
    for name, value in headers.items():
        key = name.strip().lower()
        folded = _WHITESPACE_RUN.sub(" ", str(value).strip())
        if key in normalized:
            normalized[key] = f"{normalized[key]},{folded}"
        else:
            normalized[key] = folded
    names = sorted(normalized)
    block = "".join(f"{name}:{normalized[name]}\n" for name in names)
    return block, ";".join(names)


def hash_payload(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def derive_signing_key(secret_access_key: str, date: str, region: str, service: str = SERVICE) -> bytes:
    k_date = _hmac(("AWS4" + secret_access_key).encode("utf-8"), date)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, TERMINATOR)


def build_canonical_request(
    method: str,
    path: str,
    query: list[tuple[str, str]] | dict[str, str] | None,
    headers: dict[str, str],
    payload_hash: str,
) -> tuple[str, str]:
    """Return (canonical request, signed headers)."""
    header_block, signed_headers = canonical_headers(headers)
    canonical = "\n".join(
        [
            method.upper(),
            canonical_uri(path),
            canonical_query_string(query),
            header_block,
            signed_headers,
            payload_hash,
        ]
    )
    return canonical, signed_headers


def sign_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload_hash: str,
    credentials: Credentials,
    region: str,
    timestamp: datetime,
    service: str = SERVICE,
) -> SigningContext:
    """Compute the SigV4 Authorization header for one request.

    ``url`` must carry the already-encoded path and query exactly as they will
    be sent. ``headers`` are the headers to sign; a ``host`` header derived
    from the URL is added when missing.
    """
    parts = urlsplit(url)
    to_sign = {name.lower(): value for name, value in headers.items()}
    if "host" not in to_sign:
        to_sign["host"] = parts.netloc.rpartition("@")[2]

    request_date = amz_date(timestamp)
    day = date_stamp(timestamp)
    scope = f"{day}/{region}/{service}/{TERMINATOR}"

    canonical, signed_headers = build_canonical_request(
        method,
        unquote(parts.path),
        parse_query(parts.query),
        to_sign,
        payload_hash,
    )
    string_to_sign = "\n".join(
        [
            ALGORITHM,
            request_date,
            scope,
            hashlib.sha256(canonical.encode("utf-8")).hexdigest(),
        ]
    )
    key = derive_signing_key(credentials.secret_access_key, day, region, service)
    signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
    authorization = (
        f"{ALGORITHM} Credential={credentials.access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    return SigningContext(
        amz_date=request_date,
        date_stamp=day,
        credential_scope=scope,
        canonical_request=canonical,
        string_to_sign=string_to_sign,
        signed_headers=signed_headers,
        signature=signature,
        authorization=authorization,
    )


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC)
