"""Tests for healthbot.bot.telegram_bot — Telegram command and button handlers.

Handlers run against real services on a temp DB; Telegram objects are mocked
and notifications go to in-memory fake providers.
"""

from datetime import timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from healthbot.bot.telegram_bot import (
    Services,
    _handle_medication_callback,
    _handle_reminder_callback,
    _handle_workout_callback,
    _setup_scheduler,
    build_app,
    cmd_bp,
    cmd_done,
    cmd_help,
    cmd_next,
    cmd_reminders,
    cmd_stats,
    cmd_weight,
    cmd_workout,
)
from healthbot.core.medication import MedicationService
from healthbot.core.reminders import ReminderService
from healthbot.core.scheduler import Scheduler
from healthbot.core.workout import WorkoutService
from healthbot.data.models import Domain, IntakeStatus, SessionStatus

USER = 12345
STRANGER = 99999


@pytest.fixture
def services(dispatcher, state_db, reading_db, med_db, workout_db, clock):
    reminders = ReminderService(state_db, reading_db, dispatcher, clock=clock, tz=timezone.utc)
    medications = MedicationService(med_db, state_db, dispatcher, clock=clock, tz=timezone.utc)
    workouts = WorkoutService(workout_db, dispatcher, clock=clock, tz=timezone.utc)
    return Services(
        reading_db=reading_db,
        reminders=reminders,
        medications=medications,
        workouts=workouts,
        scheduler=Scheduler([USER], reminders, medications, workouts, clock=clock),
        clock=clock,
        tz=timezone.utc,
    )


def _make_update(user_id=USER):
    """Create a mock Update with a text message."""
    update = MagicMock()
    update.effective_user.id = user_id
    update.message.reply_text = AsyncMock()
    return update


def _make_context(services, args=None):
    context = MagicMock()
    context.args = args or []
    context.bot_data = {"services": services}
    context.bot.send_message = AsyncMock()
    return context


def _make_callback(data, user_id=USER):
    update = MagicMock()
    update.callback_query.data = data
    update.callback_query.answer = AsyncMock()
    update.callback_query.from_user.id = user_id
    update.callback_query.message.chat_id = user_id
    return update


def _reply(update) -> str:
    return update.message.reply_text.call_args.args[0]


def _sent(context) -> str:
    return context.bot.send_message.call_args.kwargs["text"]


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_stranger_is_silently_ignored(self, services):
        update = _make_update(STRANGER)
        await cmd_bp(update, _make_context(services, ["120", "80"]))
        update.message.reply_text.assert_not_called()
        assert services.reading_db.get_last_bp_reading(STRANGER) is None

    @pytest.mark.asyncio
    async def test_stranger_button_ignored(self, services):
        update = _make_callback("bp_snooze", user_id=STRANGER)
        context = _make_context(services)
        await _handle_reminder_callback(update, context)
        update.callback_query.answer.assert_awaited_once()
        context.bot.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_help_lists_commands(self, services):
        update = _make_update()
        await cmd_help(update, _make_context(services))
        assert "/bp" in _reply(update) and "/done" in _reply(update)


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------


class TestReadingCommands:
    @pytest.mark.asyncio
    async def test_bp_recorded_with_category(self, services):
        update = _make_update()
        await cmd_bp(update, _make_context(services, ["128", "82", "70"]))

        reading = services.reading_db.get_last_bp_reading(USER)
        assert (reading.systolic, reading.diastolic, reading.pulse) == (128, 82, 70)
        assert "128/82" in _reply(update)
        assert "High BP Stage 1" in _reply(update)

    @pytest.mark.parametrize("args", [[], ["120"], ["abc", "80"], ["120", "80", "70", "1"], ["999", "80"]])
    @pytest.mark.asyncio
    async def test_bp_usage(self, services, args):
        update = _make_update()
        await cmd_bp(update, _make_context(services, args))
        assert _reply(update).startswith("Usage: /bp")
        assert services.reading_db.get_last_bp_reading(USER) is None

    @pytest.mark.asyncio
    async def test_bp_retracts_pending_reminder(self, services, chat_provider):
        await services.reminders.run(USER, Domain.BLOOD_PRESSURE)

        await cmd_bp(_make_update(), _make_context(services, ["120", "80"]))

        assert chat_provider.removed == ["chat-1"]

    @pytest.mark.asyncio
    async def test_weight_accepts_decimal_comma(self, services):
        update = _make_update()
        await cmd_weight(update, _make_context(services, ["81,4"]))
        assert services.reading_db.get_last_weight_log(USER).weight == 81.4
        assert "81.4 kg" in _reply(update)

    @pytest.mark.asyncio
    async def test_weight_usage(self, services):
        update = _make_update()
        await cmd_weight(update, _make_context(services, ["heavy"]))
        assert _reply(update).startswith("Usage: /weight")

    @pytest.mark.asyncio
    async def test_stats(self, services, clock):
        services.reading_db.add_bp_reading(USER, clock.now - timedelta(days=1), 120, 80)
        update = _make_update()

        await cmd_stats(update, _make_context(services))

        text = _reply(update)
        assert "14 days: 120/80 (1 days, 1 readings)" in text
        assert "⚖️ Weight\n14 days: no data" in text
        assert "Completed: 0" in text


# ---------------------------------------------------------------------------
# Reminder settings & buttons
# ---------------------------------------------------------------------------


class TestReminders:
    @pytest.mark.asyncio
    async def test_toggle(self, services):
        update = _make_update()
        await cmd_reminders(update, _make_context(services, ["weight", "off"]))
        assert services.reminders.state(USER, Domain.WEIGHT).enabled is False
        assert "turned off" in _reply(update)

    @pytest.mark.asyncio
    async def test_overview(self, services):
        update = _make_update()
        await cmd_reminders(update, _make_context(services))
        assert "bp: on, around 20:00" in _reply(update)
        assert "weight: on, around 09:00" in _reply(update)

    @pytest.mark.asyncio
    async def test_bad_arguments(self, services):
        update = _make_update()
        await cmd_reminders(update, _make_context(services, ["sleep", "on"]))
        assert _reply(update).startswith("Usage")

    @pytest.mark.asyncio
    async def test_snooze_button(self, services, clock):
        context = _make_context(services)
        await _handle_reminder_callback(_make_callback("bp_snooze"), context)

        state = services.reminders.state(USER, Domain.BLOOD_PRESSURE)
        assert state.snoozed_until == clock.now + timedelta(hours=2)
        assert "snoozed for 2 hours" in _sent(context)

    @pytest.mark.asyncio
    async def test_dont_bug_me_button(self, services, clock):
        context = _make_context(services)
        await _handle_reminder_callback(_make_callback("weight_dontbug"), context)

        state = services.reminders.state(USER, Domain.WEIGHT)
        assert state.dont_remind_until == clock.now + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_confirm_button_retracts(self, services, chat_provider):
        await services.reminders.run(USER, Domain.BLOOD_PRESSURE)
        context = _make_context(services)

        await _handle_reminder_callback(_make_callback("bp_confirm"), context)

        assert chat_provider.removed == ["chat-1"]
        assert "/bp" in _sent(context)


# ---------------------------------------------------------------------------
# Medication buttons
# ---------------------------------------------------------------------------


class TestMedicationButtons:
    @pytest.mark.asyncio
    async def test_confirm(self, services, med_db):
        med_db.add_medication(USER, "Aspirin", "08:00")
        await services.medications.check_due(USER)
        intake = med_db.list_pending_intakes(USER)[0]
        context = _make_context(services)

        await _handle_medication_callback(_make_callback(f"med_confirm:{intake.id}"), context)

        assert med_db.get_intake(intake.id).status is IntakeStatus.TAKEN
        assert "taken" in _sent(context)

    @pytest.mark.asyncio
    async def test_snooze(self, services, med_db):
        med_db.add_medication(USER, "Aspirin", "08:00")
        await services.medications.check_due(USER)
        intake = med_db.list_pending_intakes(USER)[0]
        context = _make_context(services)

        await _handle_medication_callback(_make_callback(f"med_snooze:{intake.id}"), context)

        assert "again in an hour" in _sent(context)
        assert med_db.get_intake(intake.id).status is IntakeStatus.PENDING


# ---------------------------------------------------------------------------
# Workouts
# ---------------------------------------------------------------------------


class TestWorkoutCommands:
    @pytest.mark.asyncio
    async def test_adhoc_then_done(self, services):
        update = _make_update()
        await cmd_workout(update, _make_context(services))
        assert "Ad-hoc workout" in _reply(update)

        again = _make_update()
        await cmd_workout(again, _make_context(services))
        assert "already have a workout in progress" in _reply(again)

        done = _make_update()
        await cmd_done(done, _make_context(services))
        assert "completed" in _reply(done)
        assert services.workouts.active_session(USER) is None

    @pytest.mark.asyncio
    async def test_done_without_active(self, services):
        update = _make_update()
        await cmd_done(update, _make_context(services))
        assert _reply(update) == "No workout in progress."

    @pytest.mark.asyncio
    async def test_next(self, services, workout_db):
        group = workout_db.create_group(USER, "Gym", "[1]", "20:30")
        workout_db.create_variant(group.id, "Push")
        await services.workouts.run(USER)
        update = _make_update()

        await cmd_next(update, _make_context(services))

        assert "Gym - Push" in _reply(update)
        assert "today at 20:30" in _reply(update)

    @pytest.mark.asyncio
    async def test_next_when_nothing_planned(self, services):
        update = _make_update()
        await cmd_next(update, _make_context(services))
        assert _reply(update) == "No upcoming workouts."


class TestWorkoutButtons:
    async def _pending_session(self, services, workout_db):
        group = workout_db.create_group(USER, "Gym", "[1]", "20:30")
        workout_db.create_variant(group.id, "Push")
        await services.workouts.run(USER)
        return workout_db.list_sessions(USER)[0]

    @pytest.mark.asyncio
    async def test_start_then_done(self, services, workout_db):
        session = await self._pending_session(services, workout_db)
        context = _make_context(services)

        await _handle_workout_callback(_make_callback(f"workout_start_{session.id}"), context)
        assert workout_db.get_session(session.id).status is SessionStatus.IN_PROGRESS

        await _handle_workout_callback(_make_callback(f"workout_done_{session.id}"), context)
        assert workout_db.get_session(session.id).status is SessionStatus.COMPLETED
        assert "Gym - Push completed" in _sent(context)

    @pytest.mark.asyncio
    async def test_snooze2(self, services, workout_db, clock):
        session = await self._pending_session(services, workout_db)
        context = _make_context(services)

        await _handle_workout_callback(_make_callback(f"workout_snooze2_{session.id}"), context)

        assert workout_db.get_session(session.id).snoozed_until == clock.now + timedelta(hours=2)
        assert "2h" in _sent(context)

    @pytest.mark.asyncio
    async def test_invalid_transition_reported(self, services, workout_db):
        session = await self._pending_session(services, workout_db)
        context = _make_context(services)
        await _handle_workout_callback(_make_callback(f"workout_skip_{session.id}"), context)

        await _handle_workout_callback(_make_callback(f"workout_start_{session.id}"), context)

        assert _sent(context).startswith("Can't do that")

    @pytest.mark.asyncio
    async def test_start_refused_during_adhoc(self, services, workout_db):
        session = await self._pending_session(services, workout_db)
        adhoc = services.workouts.start_adhoc(USER)
        context = _make_context(services)

        await _handle_workout_callback(_make_callback(f"workout_start_{session.id}"), context)

        assert _sent(context) == f"Can't do that: workout #{adhoc.id} is already in progress."
        assert workout_db.get_session(session.id).status is SessionStatus.PENDING

        done = _make_update()
        await cmd_done(done, _make_context(services))
        assert "Ad-hoc workout completed" in _reply(done)
        assert services.workouts.active_session(USER) is None

    @pytest.mark.asyncio
    async def test_unknown_session(self, services):
        context = _make_context(services)
        await _handle_workout_callback(_make_callback("workout_skip_424242"), context)
        assert _sent(context) == "Workout session not found."


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


class TestBuildApp:
    def test_services_typed_with_concrete_classes(self):
        hints = Services.__annotations__
        assert hints["reading_db"] == "ReadingDB"
        assert hints["reminders"] == "ReminderService"
        assert hints["medications"] == "MedicationService"
        assert hints["workouts"] == "WorkoutService"

    def test_registers_handlers_and_services(self, services):
        app = build_app(services)
        assert app.bot_data["services"] is services
        assert len(app.handlers[0]) == 12

    def test_scheduler_job(self, services):
        app = MagicMock()
        _setup_scheduler(app, services.scheduler)
        kwargs = app.job_queue.run_repeating.call_args.kwargs
        assert kwargs["name"] == "health_scheduler"
        assert kwargs["interval"] == 60
