"""
Time helpers.

All database timestamps are timezone-aware (UTC). Use these helpers instead of
`datetime.utcnow()` to avoid mixing naive and aware datetimes.
"""

from __future__ import annotations

from datetime import date, datetime, timezone


def now_utc() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def day_key_for(moment: datetime | None = None) -> date:
    """Calendar day (UTC midnight) that a timestamp rolls up into."""
    return ensure_utc(moment or now_utc()).date()


def unix_seconds(moment: datetime | None = None) -> int:
    return int(ensure_utc(moment or now_utc()).timestamp())


def ensure_utc(dt: datetime | None) -> datetime | None:
    """
    Coerce a datetime to timezone-aware UTC.

    SQLite hands back naive datetimes; treat those as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
