"""
Time helpers shared by the pipeline.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage.

    Fixed-width UTC strings keep SQL comparisons on the column lexicographic.
    """
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO-8601 timestamp."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def get_zone(name: Optional[str]) -> ZoneInfo:
    """Resolve a timezone name, falling back to UTC for empty values."""
    if not name:
        return ZoneInfo("UTC")
    return ZoneInfo(name)


def is_valid_timezone(name: str) -> bool:
    """Check whether a timezone name resolves."""
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def minutes_since_midnight(hhmm: str) -> int:
    """Convert "HH:MM" to minutes since midnight.

    Raises:
        ValueError: If the string is not a valid 24h time
    """
    hours, _, minutes = hhmm.strip().partition(":")
    h, m = int(hours), int(minutes or 0)
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError(f"Invalid time of day: {hhmm!r}")
    return h * 60 + m
