"""
Health Reminder Bot — Daily time-weighted statistics.

Each reading "covers" the time from its own timestamp until the next
reading on the same UTC calendar day (or end of day, or now, whichever
comes first). A day's average weights every value by the duration it
covers; a period's result is the plain mean of its daily averages, so a
day with ten self-measurements counts exactly as much as a quiet day with
one.

Pure functions only: no I/O, no clock access.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from healthbot.data.models import BloodPressureReading, WeightLog

DEFAULT_WINDOWS = (14, 30, 60)


@dataclass(frozen=True)
class Sample:
    """One timestamped reading reduced to its numeric fields."""

    measured_at: datetime
    values: Mapping[str, float]


@dataclass
class PeriodStats:
    averages: dict[str, float] = field(default_factory=dict)
    days: int = 0          # days with nonzero covered duration
    readings: int = 0      # raw readings inside the period, up to now


@dataclass
class _DayAggregate:
    weighted: dict[str, float] = field(default_factory=dict)
    duration: float = 0.0


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round halves away from zero (2.5 -> 3), unlike the builtin round()."""
    quantum = Decimal(1).scaleb(-ndigits)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def truncate_to_utc_day(moment: datetime) -> datetime:
    utc = moment.astimezone(timezone.utc)
    return datetime.combine(utc.date(), time.min, tzinfo=timezone.utc)


def _aggregate_days(samples: Sequence[Sample], now: datetime) -> dict[datetime, _DayAggregate]:
    days: dict[datetime, _DayAggregate] = {}
    for i, sample in enumerate(samples):
        nxt = samples[i + 1] if i + 1 < len(samples) else None
        # Identical timestamps: only the later-inserted value covers the interval
        if nxt is not None and nxt.measured_at == sample.measured_at:
            continue

        start = sample.measured_at.astimezone(timezone.utc)
        if start > now:
            continue
        day_start = truncate_to_utc_day(start)
        end = day_start + timedelta(days=1)
        if nxt is not None:
            next_at = nxt.measured_at.astimezone(timezone.utc)
            if truncate_to_utc_day(next_at) == day_start:
                end = next_at
        end = min(end, now)
        duration = (end - start).total_seconds()
        if duration <= 0:
            continue

        agg = days.setdefault(day_start, _DayAggregate())
        for name, value in sample.values.items():
            agg.weighted[name] = agg.weighted.get(name, 0.0) + value * duration
        agg.duration += duration
    return days


def daily_weighted_stats(
    samples: Iterable[Sample],
    now: datetime,
    windows: Sequence[int] = DEFAULT_WINDOWS,
    integer_fields: Iterable[str] = (),
    ndigits: int = 1,
) -> dict[int, PeriodStats | None]:
    """Day-weighted averages for each trailing window (in days).

    samples must already exclude readings flagged ignore-for-calculation.
    Fields named in integer_fields round to whole numbers; the rest keep
    ndigits decimals. A window with no covered day maps to None.
    """
    now = now.astimezone(timezone.utc)
    integer_fields = set(integer_fields)
    lookback_start = truncate_to_utc_day(now - timedelta(days=max(windows)))

    ordered = sorted(
        (s for s in samples if s.measured_at.astimezone(timezone.utc) >= lookback_start),
        key=lambda s: s.measured_at,
    )
    day_aggs = _aggregate_days(ordered, now)
    today = truncate_to_utc_day(now)

    result: dict[int, PeriodStats | None] = {}
    for period_days in windows:
        period_start = truncate_to_utc_day(now - timedelta(days=period_days))
        sums: dict[str, float] = {}
        day_count = 0
        for day, agg in day_aggs.items():
            if day < period_start or day > today or agg.duration <= 0:
                continue
            for name, weighted in agg.weighted.items():
                sums[name] = sums.get(name, 0.0) + weighted / agg.duration
            day_count += 1

        if day_count == 0:
            result[period_days] = None
            continue

        averages: dict[str, float] = {}
        for name, total in sums.items():
            mean = total / day_count
            if name in integer_fields:
                averages[name] = int(round_half_up(mean))
            else:
                averages[name] = round_half_up(mean, ndigits)

        readings = sum(
            1 for s in ordered
            if period_start <= s.measured_at.astimezone(timezone.utc) <= now
        )
        result[period_days] = PeriodStats(averages=averages, days=day_count, readings=readings)
    return result


def bp_stats(
    readings: Iterable[BloodPressureReading], now: datetime
) -> dict[int, PeriodStats | None]:
    """Systolic/diastolic day-weighted averages over 14/30/60 days."""
    samples = [
        Sample(r.measured_at, {"systolic": r.systolic, "diastolic": r.diastolic})
        for r in readings
        if not r.ignore_calc
    ]
    return daily_weighted_stats(samples, now, integer_fields=("systolic", "diastolic"))


def weight_stats(logs: Iterable[WeightLog], now: datetime) -> dict[int, PeriodStats | None]:
    samples = [Sample(log.measured_at, {"weight": log.weight}) for log in logs]
    return daily_weighted_stats(samples, now)
