# app/utils/datetime_utils.py
"""Timezone helpers shared by the sync services"""
from datetime import datetime, timezone, date
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return an aware UTC datetime.

    Some database backends hand back naive datetimes for
    DateTime(timezone=True) columns; those are stored as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Union[str, datetime, date, None]) -> Optional[datetime]:
    """Parse RFC 3339 strings, dates and datetimes into aware UTC datetimes"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if len(text) == 10:
        parsed_date = date.fromisoformat(text)
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=timezone.utc)
    return ensure_utc(datetime.fromisoformat(text))


def minutes_between(first: datetime, second: datetime) -> float:
    return abs((ensure_utc(first) - ensure_utc(second)).total_seconds()) / 60
