"""UTC time helpers.

All day and month boundaries in the credit system are UTC.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Timezone-aware UTC now for SQLAlchemy defaults."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: datetime) -> datetime:
    value = ensure_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_next_day(value: datetime) -> datetime:
    return start_of_day(value) + timedelta(days=1)


def start_of_month(value: datetime) -> datetime:
    return start_of_day(value).replace(day=1)


def start_of_next_month(value: datetime) -> datetime:
    first = start_of_month(value)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def start_of_previous_month(value: datetime) -> datetime:
    first = start_of_month(value)
    if first.month == 1:
        return first.replace(year=first.year - 1, month=12)
    return first.replace(month=first.month - 1)


def end_of_month(value: datetime) -> datetime:
    """Last microsecond of the month containing value."""
    return start_of_next_month(value) - timedelta(microseconds=1)


def whole_days_between(later: datetime, earlier: datetime) -> int:
    """Number of complete 24h days from earlier to later (negative if reversed)."""
    delta = ensure_utc(later) - ensure_utc(earlier)
    days = abs(delta) // timedelta(days=1)
    return days if delta >= timedelta(0) else -days
