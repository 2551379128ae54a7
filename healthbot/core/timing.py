"""
Health Reminder Bot — Adaptive reminder hour.

Learns when a user usually measures (mean hour of the last two weeks of
readings) and keeps the result inside a domain-specific band: blood
pressure is an evening measurement, weight a fasting morning one.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo

from healthbot.data.models import DEFAULT_REMINDER_HOUR, Domain

LOOKBACK = timedelta(days=14)
MIN_READINGS = 3


@dataclass(frozen=True)
class HourBand:
    default: int
    low: int
    high: int

    def clamp(self, hour: int) -> int:
        return max(self.low, min(self.high, hour))


HOUR_BANDS = {
    Domain.BLOOD_PRESSURE: HourBand(DEFAULT_REMINDER_HOUR[Domain.BLOOD_PRESSURE], 8, 23),
    Domain.WEIGHT: HourBand(DEFAULT_REMINDER_HOUR[Domain.WEIGHT], 6, 12),
}


def preferred_reminder_hour(
    measured_at: Iterable[datetime],
    band: HourBand,
    tz: tzinfo,
) -> int:
    """Mean local hour of the given measurements, clamped to band.

    Callers pass the last LOOKBACK worth of timestamps. Fewer than
    MIN_READINGS returns the band default. The mean uses integer division.
    """
    hours = [moment.astimezone(tz).hour for moment in measured_at]
    if len(hours) < MIN_READINGS:
        return band.default
    return band.clamp(sum(hours) // len(hours))
