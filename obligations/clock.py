"""
Time helpers shared by the loan ledger and the recurring expense scheduler.

Services take an optional ``clock`` callable returning an aware UTC datetime
so "now" and "today" can be pinned in tests.
"""

from datetime import datetime, date, timezone, time
from typing import Any, Callable, Optional

from .errors import ValidationError

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Any, field: Optional[str] = None) -> Optional[datetime]:
    """
    Coerce a datetime, date or ISO string to an aware UTC datetime

    Naive datetimes are treated as UTC and plain dates as midnight UTC.

    Raises:
        ValidationError: If the value is not a date, datetime or ISO string
    """
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as e:
            raise ValidationError(f"Invalid datetime: {value!r}", field=field) from e
    if not isinstance(value, datetime):
        if isinstance(value, date):
            return start_of_day(value)
        raise ValidationError(f"Expected a datetime, got {type(value).__name__}", field=field)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min).replace(tzinfo=timezone.utc)


def to_date(value: Any, field: Optional[str] = None) -> Optional[date]:
    """
    Coerce a date, datetime or ISO string to a calendar date

    Datetimes are reduced to their UTC day.

    Raises:
        ValidationError: If the value is not a date, datetime or ISO date string
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError as e:
            raise ValidationError(f"Invalid date: {value!r}", field=field) from e
    raise ValidationError(f"Expected a date, got {type(value).__name__}", field=field)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value)
