"""Webhook signatures: HMAC-SHA256 over ``"{timestamp}.{body}"``.

The header carries ``t=<unix time>`` and one or more ``v1=<hex digest>``
entries, so signing secrets can be rolled without downtime.
"""

from __future__ import annotations

from datetime import datetime

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from .timestamps import TimestampError, assert_within_tolerance


class SignatureError(ValueError):
    """Raised when a webhook signature is invalid or malformed."""


def _parse_header(header: str) -> tuple[str, list[str]]:
    timestamp = ""
    signatures: list[str] = []
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    if not timestamp or not signatures:
        raise SignatureError("signature header malformed")
    return timestamp, signatures


def compute_signature(payload: bytes, timestamp: str, secret: str) -> str:
    mac = hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    mac.update(timestamp.encode("ascii") + b"." + payload)
    return mac.finalize().hex()


def sign_payload(payload: bytes, secret: str, timestamp: int) -> str:
    """Build a signature header; used by tests and local tooling."""
    return f"t={timestamp},v1={compute_signature(payload, str(timestamp), secret)}"


def verify_signature(
    payload: bytes,
    header: str,
    secret: str,
    *,
    tolerance_seconds: int,
    now: datetime | None = None,
) -> None:
    """Validate the signature header against the raw request body."""
    if not secret:
        raise SignatureError("signing secret missing")
    timestamp, candidates = _parse_header(header)
    try:
        assert_within_tolerance(timestamp, tolerance_seconds=tolerance_seconds, now=now)
    except TimestampError as exc:
        raise SignatureError(str(exc)) from exc
    signed = timestamp.encode("ascii") + b"." + payload
    for candidate in candidates:
        try:
            expected = bytes.fromhex(candidate)
        except ValueError:
            continue
        mac = hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
        mac.update(signed)
        try:
            mac.verify(expected)
            return
        except InvalidSignature:
            continue
    raise SignatureError("signature verification failed")
