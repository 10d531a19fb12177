"""
Timestamp Utilities

Readings are stamped with integer epoch milliseconds. These helpers keep
the conversions to and from datetimes in one place.
"""

import time
from datetime import datetime, timezone


def now_ms() -> int:
    """Current UTC time as integer epoch milliseconds."""
    return time.time_ns() // 1_000_000


def ms_to_datetime(timestamp_ms: int) -> datetime:
    """
    Convert epoch milliseconds to a timezone-aware UTC datetime.

    Args:
        timestamp_ms: Epoch milliseconds

    Returns:
        UTC datetime
    """
    return datetime.fromtimestamp(timestamp_ms / 1000, timezone.utc)


def ms_to_iso(timestamp_ms: int | None) -> str | None:
    """
    Convert epoch milliseconds to an ISO string (None passes through).

    Examples:
        0             -> "1970-01-01T00:00:00+00:00"
        1700000000500 -> "2023-11-14T22:13:20.500000+00:00"
    """
    if timestamp_ms is None:
        return None
    return ms_to_datetime(timestamp_ms).isoformat()
