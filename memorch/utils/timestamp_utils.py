"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Convert datetime to ISO 8601 string, assuming UTC for naive values.

    Args:
        value: datetime to convert

    Returns:
        ISO 8601 timestamp string
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_iso(value: Optional[Union[str, int, float, datetime]]) -> datetime:
    """Parse a stored timestamp back into an aware datetime.

    Args:
        value: ISO string, unix seconds, datetime or None (epoch)

    Returns:
        timezone-aware datetime
    """
    if value is None or value == '':
        return datetime.fromtimestamp(0, tz=timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def age_in_days(value: datetime, now: Optional[datetime] = None) -> float:
    """Return how many days ago `value` was, never negative."""
    now = now or utc_now()
    return max(0.0, (now - parse_iso(value)).total_seconds() / 86400.0)
