from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def business_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Venue-local midnight-to-midnight as a half-open UTC range."""
    starts_at = datetime.combine(day, time.min, tzinfo=tz)
    ends_at = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return to_utc(starts_at), to_utc(ends_at)


def business_day_for(value: datetime, tz: ZoneInfo) -> date:
    return to_utc(value).astimezone(tz).date()


def iter_days(start: date, end: date):
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
