"""Tests for healthbot.core.medication — schedules, intakes and stock warnings."""

from datetime import date, datetime, timedelta, timezone

import pytest

from healthbot.core.medication import (
    MedicationService,
    ScheduleError,
    build_medication_message,
    daily_usage,
    days_of_stock_remaining,
    due_slots,
    is_low_on_stock,
    parse_schedule,
)
from healthbot.data.models import IntakeStatus, Medication

USER = 12345
UTC = timezone.utc


def _med(schedule="08:00", **kwargs) -> Medication:
    defaults = dict(id=1, user_id=USER, name="Metformin", dosage="500mg")
    defaults.update(kwargs)
    return Medication(schedule=schedule, **defaults)


def _at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 3, day, hour, minute, tzinfo=UTC)


@pytest.fixture
def service(med_db, state_db, dispatcher, clock):
    return MedicationService(med_db, state_db, dispatcher, clock=clock, tz=UTC)


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


class TestParseSchedule:
    def test_legacy_time(self):
        config = parse_schedule("08:00")
        assert config.type == "daily"
        assert config.times == ("08:00",)

    def test_weekly_json(self):
        config = parse_schedule('{"type": "weekly", "times": ["09:00"], "days": [1, 4]}')
        assert config.type == "weekly"
        assert config.days == frozenset({1, 4})

    def test_as_needed(self):
        assert parse_schedule('{"type": "as_needed"}').times == ()

    @pytest.mark.parametrize(
        "raw",
        [
            "25:00",
            "not a schedule",
            "[1, 2]",
            '{"type": "monthly"}',
            '{"type": "weekly", "times": ["09:00"], "days": [7]}',
            '{"times": ["8am"]}',
        ],
    )
    def test_invalid(self, raw):
        with pytest.raises(ScheduleError):
            parse_schedule(raw)

    def test_daily_usage(self):
        assert daily_usage(parse_schedule('{"times": ["08:00", "20:00"]}')) == 2.0
        weekly = parse_schedule('{"type": "weekly", "times": ["09:00"], "days": [1, 3, 5]}')
        assert daily_usage(weekly) == pytest.approx(3 / 7)
        assert daily_usage(parse_schedule('{"type": "as_needed"}')) == 0.0


class TestDueSlots:
    NOW = _at(10, 20)  # Monday

    def test_only_passed_slots(self):
        med = _med('{"times": ["08:00", "21:00"]}')
        slots = due_slots(med, parse_schedule(med.schedule), self.NOW, UTC)
        assert slots == [_at(10, 8)]

    def test_weekly_other_day(self):
        med = _med('{"type": "weekly", "times": ["08:00"], "days": [0, 6]}')
        assert due_slots(med, parse_schedule(med.schedule), self.NOW, UTC) == []

    def test_weekly_matching_day(self):
        med = _med('{"type": "weekly", "times": ["08:00"], "days": [1]}')
        assert due_slots(med, parse_schedule(med.schedule), self.NOW, UTC) == [_at(10, 8)]

    def test_outside_date_range(self):
        config = parse_schedule("08:00")
        assert due_slots(_med(start_date=date(2025, 3, 11)), config, self.NOW, UTC) == []
        assert due_slots(_med(end_date=date(2025, 3, 9)), config, self.NOW, UTC) == []
        assert due_slots(_med(end_date=date(2025, 3, 10)), config, self.NOW, UTC) == [_at(10, 8)]


class TestStock:
    NOW = _at(10, 11)

    def test_days_remaining(self):
        med = _med('{"times": ["08:00", "20:00"]}', inventory_count=10)
        assert days_of_stock_remaining(med) == 5.0

    def test_untracked_or_as_needed(self):
        assert days_of_stock_remaining(_med(inventory_count=None)) is None
        assert days_of_stock_remaining(_med('{"type": "as_needed"}', inventory_count=5)) is None

    def test_low_against_threshold(self):
        med = _med('{"times": ["08:00", "20:00"]}', inventory_count=10)
        assert is_low_on_stock(med, self.NOW, UTC, threshold_days=7) is True
        assert is_low_on_stock(med, self.NOW, UTC, threshold_days=5) is False

    def test_enough_until_end_date(self):
        med = _med(
            '{"times": ["08:00", "20:00"]}', inventory_count=10, end_date=date(2025, 3, 13)
        )
        assert is_low_on_stock(med, self.NOW, UTC, threshold_days=7) is False

    def test_message(self):
        assert build_medication_message([_med()]) == "Time to take Metformin (500mg)"
        text = build_medication_message([_med(), _med(id=2, name="Aspirin", dosage="100mg")])
        assert text.startswith("Time to take 2 medications:")
        assert "• Aspirin (100mg)" in text


# ---------------------------------------------------------------------------
# MedicationService
# ---------------------------------------------------------------------------


class TestCheckDue:
    @pytest.mark.asyncio
    async def test_groups_meds_sharing_a_slot(self, service, med_db, chat_provider):
        med_db.add_medication(USER, "Aspirin", "08:00", dosage="100mg")
        med_db.add_medication(USER, "Metformin", "08:00", dosage="500mg")
        med_db.add_medication(USER, "Statin", "21:00", dosage="20mg")

        assert await service.check_due(USER) == 2

        assert len(chat_provider.sent) == 1
        notification = chat_provider.sent[0][1]
        ids = notification.data["intake_ids"]
        token = ",".join(str(i) for i in ids)
        assert [a.id for a in notification.actions] == [
            f"med_confirm:{token}", f"med_snooze:{token}",
        ]
        assert "Aspirin" in notification.body and "Metformin" in notification.body

    @pytest.mark.asyncio
    async def test_each_slot_once(self, service, med_db, chat_provider):
        med_db.add_medication(USER, "Aspirin", "08:00")
        await service.check_due(USER)
        assert await service.check_due(USER) == 0
        assert len(chat_provider.sent) == 1

    @pytest.mark.asyncio
    async def test_invalid_schedule_skipped(self, service, med_db):
        med_db.add_medication(USER, "Broken", "whenever")
        med_db.add_medication(USER, "Aspirin", "08:00")
        assert await service.check_due(USER) == 1

    @pytest.mark.asyncio
    async def test_archived_ignored(self, service, med_db):
        med = med_db.add_medication(USER, "Aspirin", "08:00")
        med_db.archive_medication(med.id, USER)
        assert await service.check_due(USER) == 0


class TestFollowUps:
    @pytest.mark.asyncio
    async def test_hourly_follow_up_then_missed(self, service, med_db, clock, chat_provider):
        med_db.add_medication(USER, "Aspirin", "08:00")
        clock.now = _at(10, 8, 30)
        await service.check_due(USER)
        assert await service.check_pending(USER) == 0

        clock.now = _at(10, 9, 31)
        assert await service.check_pending(USER) == 1
        assert "haven't confirmed taking Aspirin" in chat_provider.sent[-1][1].body

        clock.now = _at(10, 10, 0)
        assert await service.check_pending(USER) == 0
        clock.now = _at(10, 10, 32)
        assert await service.check_pending(USER) == 1

        clock.now = _at(11, 8, 1)
        await service.check_pending(USER)
        intake = med_db.list_intakes(USER)[0]
        assert intake.status is IntakeStatus.MISSED
        assert sorted(chat_provider.removed) == ["chat-1", "chat-2", "chat-3"]


class TestUserActions:
    @pytest.mark.asyncio
    async def test_confirm_takes_stock_and_retracts(
        self, service, med_db, clock, chat_provider
    ):
        med = med_db.add_medication(USER, "Aspirin", "08:00", inventory_count=10)
        await service.check_due(USER)
        intake = med_db.list_pending_intakes(USER)[0]

        assert await service.confirm(USER, [intake.id]) == [intake.id]

        taken = med_db.get_intake(intake.id)
        assert taken.status is IntakeStatus.TAKEN
        assert taken.taken_at == clock.now
        assert med_db.get_medication(med.id).inventory_count == 9
        assert chat_provider.removed == ["chat-1"]

        # a second tap changes nothing
        assert await service.confirm(USER, [intake.id]) == []
        assert med_db.get_medication(med.id).inventory_count == 9

    @pytest.mark.asyncio
    async def test_confirm_group_retracts_shared_message_once(
        self, service, med_db, chat_provider
    ):
        med_db.add_medication(USER, "Aspirin", "08:00")
        med_db.add_medication(USER, "Metformin", "08:00")
        await service.check_due(USER)
        ids = [i.id for i in med_db.list_pending_intakes(USER)]

        assert sorted(await service.confirm(USER, ids)) == sorted(ids)
        assert chat_provider.removed == ["chat-1"]

    @pytest.mark.asyncio
    async def test_confirm_ignores_other_users_intakes(self, service, med_db):
        med_db.add_medication(USER, "Aspirin", "08:00")
        await service.check_due(USER)
        intake = med_db.list_pending_intakes(USER)[0]

        assert await service.confirm(99999, [intake.id]) == []
        assert med_db.get_intake(intake.id).status is IntakeStatus.PENDING

    @pytest.mark.asyncio
    async def test_snooze_restarts_follow_up_timer(self, service, med_db, clock, chat_provider):
        med_db.add_medication(USER, "Aspirin", "08:00")
        clock.now = _at(10, 8, 0)
        await service.check_due(USER)
        intake = med_db.list_pending_intakes(USER)[0]

        clock.now = _at(10, 8, 50)
        assert await service.snooze(USER, [intake.id]) == 1
        assert chat_provider.removed == ["chat-1"]

        clock.now = _at(10, 9, 30)
        assert await service.check_pending(USER) == 0
        clock.now = _at(10, 9, 51)
        assert await service.check_pending(USER) == 1


class TestLowStock:
    @pytest.mark.asyncio
    async def test_warns_once_per_day_at_configured_hour(
        self, service, med_db, clock, chat_provider
    ):
        med_db.add_medication(USER, "Aspirin", "08:00", inventory_count=3)
        med_db.add_medication(USER, "Vitamin D", "08:00", inventory_count=100)

        clock.now = _at(10, 10, 0)
        assert await service.check_low_stock(USER) is False

        clock.now = _at(10, 11, 0)
        assert await service.check_low_stock(USER) is True
        body = chat_provider.sent[0][1].body
        assert "Aspirin: 3 units" in body
        assert "Vitamin D" not in body

        clock.now = _at(10, 11, 30)
        assert await service.check_low_stock(USER) is False

        clock.now = _at(11, 11, 0)
        assert await service.check_low_stock(USER) is True

    def test_low_stock_list(self, service, med_db):
        med_db.add_medication(USER, "Aspirin", "08:00", inventory_count=3)
        med_db.add_medication(USER, "Untracked", "08:00")
        assert [m.name for m in service.low_stock(USER)] == ["Aspirin"]
