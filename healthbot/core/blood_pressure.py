"""
Health Reminder Bot — Blood pressure classification.

Maps systolic/diastolic values onto clinical categories with an ordinal
severity, and finds the dominant category of a user's recent history.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from enum import Enum

from healthbot.data.models import BloodPressureReading


class BPCategory(str, Enum):
    UNKNOWN = "Unknown"
    NORMAL = "Normal"
    ELEVATED = "Elevated"
    STAGE_1 = "High BP Stage 1"
    STAGE_2 = "High BP Stage 2"
    CRISIS = "Hypertensive Crisis"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def parse(cls, value: str) -> BPCategory:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


_SEVERITY = {
    BPCategory.UNKNOWN: 0,
    BPCategory.NORMAL: 1,
    BPCategory.ELEVATED: 2,
    BPCategory.STAGE_1: 3,
    BPCategory.STAGE_2: 4,
    BPCategory.CRISIS: 5,
}


def categorize(systolic: int, diastolic: int) -> BPCategory:
    if systolic > 180 or diastolic > 120:
        return BPCategory.CRISIS
    if systolic >= 140 or diastolic >= 90:
        return BPCategory.STAGE_2
    if systolic >= 130 or diastolic >= 80:
        return BPCategory.STAGE_1
    if 120 <= systolic <= 129 and diastolic < 80:
        return BPCategory.ELEVATED
    if systolic < 120 and diastolic < 80:
        return BPCategory.NORMAL
    return BPCategory.UNKNOWN


def dominant_category(readings: Iterable[BloodPressureReading]) -> BPCategory:
    """Most frequent category; ties go to the more severe one.

    Readings flagged ignore_calc do not vote. No votes -> NORMAL.
    """
    counts = Counter(
        category
        for category in (BPCategory.parse(r.category) for r in readings if not r.ignore_calc)
        if category is not BPCategory.UNKNOWN
    )
    if not counts:
        return BPCategory.NORMAL
    return max(counts, key=lambda category: (counts[category], category.severity))


def is_escalated(
    latest: BloodPressureReading | None, recent: Iterable[BloodPressureReading]
) -> bool:
    """True when the latest reading is strictly worse than the recent norm.

    The latest reading is compared even if it is flagged ignore_calc; the
    flag only removes it from the dominant-category vote.
    """
    if latest is None:
        return False
    return BPCategory.parse(latest.category).severity > dominant_category(recent).severity
