"""Tests for healthbot.core.timing — adaptive reminder hour."""

from datetime import datetime, timedelta, timezone

from healthbot.core.timing import HOUR_BANDS, HourBand, preferred_reminder_hour
from healthbot.data.models import Domain

BP = HOUR_BANDS[Domain.BLOOD_PRESSURE]
WEIGHT = HOUR_BANDS[Domain.WEIGHT]


def _hours(*hours: int) -> list[datetime]:
    return [datetime(2025, 3, day, h, 30, tzinfo=timezone.utc) for day, h in enumerate(hours, 1)]


class TestHourBand:
    def test_clamp(self):
        band = HourBand(default=9, low=6, high=12)
        assert band.clamp(3) == 6
        assert band.clamp(9) == 9
        assert band.clamp(17) == 12

    def test_domain_bands(self):
        assert (BP.default, BP.low, BP.high) == (20, 8, 23)
        assert (WEIGHT.default, WEIGHT.low, WEIGHT.high) == (9, 6, 12)


class TestPreferredReminderHour:
    def test_too_few_readings_returns_default(self):
        assert preferred_reminder_hour(_hours(7, 8), BP, timezone.utc) == 20
        assert preferred_reminder_hour([], WEIGHT, timezone.utc) == 9

    def test_integer_mean_of_hours(self):
        # 19 + 20 + 22 = 61 -> 20 (no rounding up)
        assert preferred_reminder_hour(_hours(19, 20, 22), BP, timezone.utc) == 20
        # 21 + 22 + 22 = 65 -> 21
        assert preferred_reminder_hour(_hours(21, 22, 22), BP, timezone.utc) == 21

    def test_clamped_to_band(self):
        assert preferred_reminder_hour(_hours(15, 16, 17), WEIGHT, timezone.utc) == 12
        assert preferred_reminder_hour(_hours(5, 6, 4), BP, timezone.utc) == 8

    def test_uses_local_hour(self):
        plus_two = timezone(timedelta(hours=2))
        # 05:30 UTC is 07:30 local
        assert preferred_reminder_hour(_hours(5, 5, 5), WEIGHT, plus_two) == 7
