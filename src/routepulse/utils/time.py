from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


DEFAULT_TZ = ZoneInfo("Asia/Manila")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_datetime(value: str, default_tz: ZoneInfo = DEFAULT_TZ) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=default_tz)
    return dt


def to_utc(dt: datetime, default_tz: ZoneInfo = DEFAULT_TZ) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=default_tz)
    return dt.astimezone(timezone.utc)


def local_midnight(day: date, tz: ZoneInfo = DEFAULT_TZ) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=tz)


def epoch_millis(dt: datetime, default_tz: ZoneInfo = DEFAULT_TZ) -> int:
    """Whole milliseconds since the Unix epoch (floored, exact integer arithmetic)."""

    return (to_utc(dt, default_tz) - EPOCH) // timedelta(milliseconds=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

