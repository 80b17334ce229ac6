"""
UTC datetime utilities for consistent timezone handling.

All datetime values in the system should be timezone-aware UTC.
Use these helpers instead of datetime.now() or datetime.utcnow().
"""

import re
from datetime import UTC, datetime
from typing import Protocol

_EXTRA_FRACTION = re.compile(r"(\.\d{6})\d+")


def utc_now() -> datetime:
    """
    Return the current UTC datetime with timezone info.

    Returns:
        Timezone-aware datetime in UTC
    """
    return datetime.now(UTC)


def from_timestamp_ms_utc(timestamp_ms: int) -> datetime:
    """
    Create a UTC-aware datetime from a millisecond Unix timestamp.
    Gmail reports internalDate and watch expiration in milliseconds.

    Args:
        timestamp_ms: Unix timestamp in milliseconds

    Returns:
        UTC-aware datetime
    """
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)


def parse_iso_utc(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (Graph uses a trailing 'Z' and 7 fractional digits)."""
    parsed = datetime.fromisoformat(_EXTRA_FRACTION.sub(r"\1", value.strip()))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def to_iso_z(dt: datetime) -> str:
    """Format a datetime as UTC ISO-8601 with millisecond precision and a trailing 'Z'."""
    aware = dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt.astimezone(UTC)
    return aware.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class Clock(Protocol):
    """Source of the current time; injected so expiry logic is testable."""

    def now(self) -> datetime:
        """Return the current UTC time."""
        ...


class SystemClock:
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return utc_now()
