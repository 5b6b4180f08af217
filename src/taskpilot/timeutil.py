from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
import re
from zoneinfo import ZoneInfo

from dateutil.parser import isoparse


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_date_ymd(s: str) -> date:
    """Parse strict YYYY-MM-DD string into a date. Raises ValueError."""
    return datetime.strptime(s, "%Y-%m-%d").date()


def parse_time_hhmm(s: str) -> time:
    """Parse strict HH:MM string into a time. Raises ValueError."""
    if not re.fullmatch(r"\d{2}:\d{2}", s):
        raise ValueError("Time must match HH:MM")

    hour = int(s[0:2])
    minute = int(s[3:5])

    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError("Hour/minute out of range")

    return time(hour=hour, minute=minute)


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def dt_to_db(dt: datetime) -> str:
    """Convert tz-aware datetime to a UTC ISO-8601 string for DB storage.

    Stored values are always UTC so that string comparison in SQL matches
    chronological order.
    """
    if dt.tzinfo is None:
        raise ValueError("dt_to_db requires a tz-aware datetime")
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def db_to_dt(s: str) -> datetime:
    """Parse ISO-8601 string from DB into a datetime."""
    return datetime.fromisoformat(s)


def to_rfc3339(dt: datetime, tz: ZoneInfo) -> str:
    """Render an instant as RFC 3339 with the explicit offset of ``tz`` at that instant."""
    if dt.tzinfo is None:
        raise ValueError("to_rfc3339 requires a tz-aware datetime")
    return dt.astimezone(tz).isoformat(timespec="seconds")


def parse_provider_dt(value: str) -> datetime:
    """Parse an RFC 3339 timestamp from the calendar provider. Raises ValueError."""
    parsed = isoparse(value)
    if parsed.tzinfo is None:
        raise ValueError(f"Provider timestamp has no offset: {value}")
    return parsed


def ceil_to_granularity(dt: datetime, granularity: timedelta, tz: ZoneInfo) -> datetime:
    """Round ``dt`` up to the next granularity boundary of the local day in ``tz``."""
    local = dt.astimezone(tz)
    midnight = datetime.combine(local.date(), time.min, tzinfo=tz)
    elapsed = local - midnight
    step = granularity.total_seconds()
    steps = -(-elapsed.total_seconds() // step)
    return (midnight + timedelta(seconds=steps * step)).astimezone(timezone.utc)
