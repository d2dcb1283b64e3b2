"""Timestamp helpers: ISO-8601 parsing and webhook replay tolerance."""

from __future__ import annotations

from datetime import datetime, timezone


class TimestampError(ValueError):
    """Raised when timestamps are malformed or outside the permitted tolerance."""


def parse_timestamp(value: str) -> datetime:
    if not value:
        raise TimestampError("timestamp missing")
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
    except ValueError as exc:
        raise TimestampError("timestamp is not ISO-8601 compatible") from exc
    if dt.tzinfo is None:
        raise TimestampError("timestamp must include timezone information")
    return dt.astimezone(timezone.utc)


def parse_unix_timestamp(value: str) -> datetime:
    if not value:
        raise TimestampError("timestamp missing")
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise TimestampError("timestamp is not a unix time") from exc


def assert_within_tolerance(
    timestamp: str, *, tolerance_seconds: int, now: datetime | None = None
) -> datetime:
    """Validate a unix timestamp string and ensure it is within the tolerance window."""
    dt = parse_unix_timestamp(timestamp)
    ref = now or datetime.now(timezone.utc)
    delta = abs((ref - dt).total_seconds())
    if delta > tolerance_seconds:
        raise TimestampError(
            f"timestamp skew {delta:.0f}s exceeds tolerance {tolerance_seconds}s"
        )
    return dt
