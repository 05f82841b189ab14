"""
Time helpers for the confirmation window.

SQLite hands datetimes back without tzinfo, so everything read from the
database goes through as_utc() before being compared with utc_now().
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def format_time_remaining(remaining: Optional[timedelta]) -> str:
    """
    Render the remaining voting window for display.

    Examples: "Expired", "45m remaining", "3h remaining", "5h 12m remaining"
    """
    if remaining is None:
        return "No confirmation window"

    total_minutes = int(remaining.total_seconds() // 60)
    if total_minutes <= 0:
        return "Expired"

    hours, minutes = divmod(total_minutes, 60)
    if hours == 0:
        return f"{minutes}m remaining"
    if minutes == 0:
        return f"{hours}h remaining"
    return f"{hours}h {minutes}m remaining"
