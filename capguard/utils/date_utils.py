"""Date manipulation utilities"""

from datetime import date, datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def to_accrual_date(value: date | datetime) -> date:
    """Normalize a timestamp to its UTC calendar date (midnight, no time of day)"""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values (SQLite) are taken to be UTC already"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
