"""
Timestamp utilities for consistent time handling across the graph store.

Timestamps are persisted as ISO-8601 UTC strings.
"""

from datetime import datetime, timezone
from typing import Optional

SECONDS_PER_DAY = 86400.0


def now_iso(now: Optional[datetime] = None) -> str:
    """Return an ISO-8601 UTC timestamp string.

    Args:
        now: datetime to format (optional, uses current time if None)

    Returns:
        ISO-8601 timestamp string
    """
    if now is None:
        now = datetime.now(timezone.utc)
    return now.isoformat()


def to_datetime(value) -> Optional[datetime]:
    """Convert a stored timestamp to an aware datetime.

    Accepts ISO strings (with or without a trailing ``Z``), datetimes, and
    driver temporal values exposing ``to_native()``.

    Args:
        value: Stored timestamp value

    Returns:
        Timezone-aware datetime, or None if the value cannot be parsed
    """
    if value is None or value == '':
        return None
    if hasattr(value, 'to_native'):
        value = value.to_native()
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def age_in_days(value, now: Optional[datetime] = None) -> float:
    """Days elapsed since a stored timestamp; unparseable values count as brand new.

    Args:
        value: Stored timestamp value
        now: Reference time (optional, uses current time if None)

    Returns:
        Non-negative age in days
    """
    dt = to_datetime(value)
    if dt is None:
        return 0.0
    if now is None:
        now = datetime.now(timezone.utc)
    return max(0.0, (now - dt).total_seconds() / SECONDS_PER_DAY)
