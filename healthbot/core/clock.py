"""Injectable time source and local-day helpers."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, time, timezone, tzinfo

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


def local_date(moment: datetime, tz: tzinfo) -> date:
    return moment.astimezone(tz).date()


def local_day_start(moment: datetime, tz: tzinfo) -> datetime:
    """Midnight of moment's local day, as an aware datetime in tz."""
    return datetime.combine(local_date(moment, tz), time.min, tzinfo=tz)


def at_local_time(day: date, hhmm: str, tz: tzinfo) -> datetime:
    """Combine a date with an "HH:MM" string in tz. Raises ValueError if malformed."""
    hour, minute = parse_hhmm(hhmm)
    return datetime.combine(day, time(hour, minute), tzinfo=tz)


def parse_hhmm(value: str) -> tuple[int, int]:
    parts = value.strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"invalid time of day: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"invalid time of day: {value!r}")
    return hour, minute


def sunday_based_weekday(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7
