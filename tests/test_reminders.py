"""Tests for healthbot.core.reminders — gate sequence and reminder service."""

from datetime import datetime, timedelta, timezone

import pytest

from healthbot.core.reminders import (
    RULES,
    Gate,
    ReminderService,
    build_reminder,
    evaluate,
)
from healthbot.data.models import Domain, ReminderState

USER = 12345
BP = Domain.BLOOD_PRESSURE
WEIGHT = Domain.WEIGHT


@pytest.fixture
def service(state_db, reading_db, dispatcher, clock):
    return ReminderService(state_db, reading_db, dispatcher, clock=clock, tz=timezone.utc)


def _days_ago(clock, days, hour, minute=0):
    return (clock.now - timedelta(days=days)).replace(hour=hour, minute=minute)


# ---------------------------------------------------------------------------
# Pure evaluation
# ---------------------------------------------------------------------------


class TestEvaluate:
    NOW = datetime(2025, 3, 10, 20, 0, tzinfo=timezone.utc)

    def _state(self, **overrides) -> ReminderState:
        return ReminderState(user_id=USER, domain=BP, **overrides)

    def test_eligible(self):
        decision = evaluate(self._state(), None, self.NOW, timezone.utc, RULES[BP])
        assert decision.eligible is True
        assert decision.preferred_hour == 20

    def test_gates_short_circuit_in_order(self):
        state = self._state(
            enabled=False,
            snoozed_until=self.NOW + timedelta(hours=1),
            dont_remind_until=self.NOW + timedelta(hours=5),
        )
        assert evaluate(state, None, self.NOW, timezone.utc, RULES[BP]).blocked_by is Gate.DISABLED

        state.enabled = True
        assert evaluate(state, None, self.NOW, timezone.utc, RULES[BP]).blocked_by is Gate.SNOOZED

        state.snoozed_until = None
        assert evaluate(state, None, self.NOW, timezone.utc, RULES[BP]).blocked_by is Gate.SUPPRESSED

    def test_expired_windows_do_not_block(self):
        state = self._state(
            snoozed_until=self.NOW - timedelta(minutes=1),
            dont_remind_until=self.NOW - timedelta(minutes=1),
        )
        assert evaluate(state, None, self.NOW, timezone.utc, RULES[BP]).eligible is True

    def test_measured_today(self):
        decision = evaluate(
            self._state(), self.NOW.replace(hour=7), self.NOW, timezone.utc, RULES[BP]
        )
        assert decision.blocked_by is Gate.MEASURED_RECENTLY

    def test_min_gap(self):
        now = self.NOW.replace(hour=8)
        last = now - timedelta(hours=9)  # yesterday 23:00
        decision = evaluate(self._state(), last, now, timezone.utc, RULES[BP])
        assert decision.blocked_by is Gate.TOO_SOON

    @pytest.mark.parametrize("hour,eligible", [(18, False), (19, True), (21, True), (22, False)])
    def test_hour_tolerance(self, hour, eligible):
        now = self.NOW.replace(hour=hour)
        decision = evaluate(self._state(), None, now, timezone.utc, RULES[BP])
        assert decision.eligible is eligible
        if not eligible:
            assert decision.blocked_by is Gate.OUTSIDE_HOURS

    def test_sent_today(self):
        state = self._state(last_notification_sent_at=self.NOW.replace(hour=19, minute=5))
        decision = evaluate(state, None, self.NOW, timezone.utc, RULES[BP])
        assert decision.blocked_by is Gate.ALREADY_SENT

    def test_sent_yesterday_allows_bp(self):
        state = self._state(last_notification_sent_at=self.NOW - timedelta(days=1))
        assert evaluate(state, None, self.NOW, timezone.utc, RULES[BP]).eligible is True

    def test_weight_freshness_and_resend_window(self):
        now = self.NOW.replace(hour=9)
        state = ReminderState(user_id=USER, domain=WEIGHT, preferred_reminder_hour=9)
        rule = RULES[WEIGHT]

        assert evaluate(state, now - timedelta(days=3), now, timezone.utc, rule).blocked_by \
            is Gate.MEASURED_RECENTLY
        assert evaluate(state, now - timedelta(days=8), now, timezone.utc, rule).eligible is True

        state.last_notification_sent_at = now - timedelta(days=2)
        assert evaluate(state, now - timedelta(days=8), now, timezone.utc, rule).blocked_by \
            is Gate.ALREADY_SENT

    def test_local_day_boundary(self):
        # 23:30 UTC on the 9th is already the 10th at UTC+2
        plus_two = timezone(timedelta(hours=2))
        now = datetime(2025, 3, 10, 18, 0, tzinfo=timezone.utc)  # 20:00 local
        last = datetime(2025, 3, 9, 23, 30, tzinfo=timezone.utc)
        decision = evaluate(self._state(), last, now, plus_two, RULES[BP])
        assert decision.blocked_by is Gate.MEASURED_RECENTLY


class TestBuildReminder:
    def test_bp_actions(self):
        n = build_reminder(BP)
        assert [a.id for a in n.actions] == ["bp_confirm", "bp_snooze", "bp_dontbug"]
        assert "higher than usual" not in n.body

    def test_enhanced_bp(self):
        n = build_reminder(BP, enhanced=True)
        assert "higher than usual" in n.body
        assert n.data["enhanced"] is True

    def test_weight_actions(self):
        assert [a.id for a in build_reminder(WEIGHT).actions] == [
            "weight_confirm", "weight_snooze", "weight_dontbug",
        ]

    def test_other_domains_rejected(self):
        with pytest.raises(ValueError):
            build_reminder(Domain.SLEEP)


# ---------------------------------------------------------------------------
# ReminderService
# ---------------------------------------------------------------------------


class TestReminderService:
    @pytest.mark.asyncio
    async def test_end_to_end_send_then_blocked(self, service, reading_db, state_db, clock):
        reading_db.add_bp_reading(USER, clock.now - timedelta(hours=21), 118, 76)

        assert service.check(USER, BP).eligible is True
        assert await service.run(USER, BP) is True

        state = state_db.get_state(USER, BP)
        assert state.last_notification_sent_at == clock.now
        assert state.last_notification_handles == {"chat": "chat-1", "push": "push-1"}

        clock.advance(minutes=5)
        decision = service.check(USER, BP)
        assert decision.eligible is False
        assert decision.blocked_by is Gate.ALREADY_SENT

    def test_check_is_idempotent(self, service, reading_db, clock):
        reading_db.add_bp_reading(USER, clock.now - timedelta(days=1), 118, 76)
        assert service.check(USER, BP) == service.check(USER, BP)

    @pytest.mark.asyncio
    async def test_no_same_day_double_reminder(self, service, state_db, clock, chat_provider):
        assert await service.run(USER, BP) is True
        clock.advance(minutes=50)
        # even after the user re-enables reminders, the same day stays quiet
        state_db.set_enabled(USER, BP, True)
        assert await service.run(USER, BP) is False
        assert len(chat_provider.sent) == 1

    @pytest.mark.asyncio
    async def test_total_failure_not_recorded(
        self, service, state_db, chat_provider, push_provider
    ):
        chat_provider.fail = True
        push_provider.fail = True

        assert await service.run(USER, BP) is False
        assert state_db.get_state(USER, BP).last_notification_sent_at is None

        chat_provider.fail = False
        assert await service.run(USER, BP) is True

    @pytest.mark.asyncio
    async def test_enhanced_when_latest_reading_escalates(
        self, service, reading_db, clock, chat_provider
    ):
        for days in (5, 4, 3):
            reading_db.add_bp_reading(USER, _days_ago(clock, days, 20), 115, 75)
        reading_db.add_bp_reading(USER, _days_ago(clock, 1, 23), 150, 95)

        assert await service.run(USER, BP) is True
        notification = chat_provider.sent[0][1]
        assert notification.data["enhanced"] is True
        assert "higher than usual" in notification.body

    @pytest.mark.asyncio
    async def test_not_enhanced_for_steady_readings(
        self, service, reading_db, clock, chat_provider
    ):
        for days in (3, 2, 1):
            reading_db.add_bp_reading(USER, _days_ago(clock, days, 20), 115, 75)

        assert await service.run(USER, BP) is True
        assert chat_provider.sent[0][1].data["enhanced"] is False

    def test_preferred_hour_is_relearned_and_persisted(
        self, service, reading_db, state_db, clock
    ):
        for days in (4, 3, 2):
            reading_db.add_bp_reading(USER, _days_ago(clock, days, 22), 115, 75)

        decision = service.check(USER, BP)

        assert decision.preferred_hour == 22
        assert decision.blocked_by is Gate.OUTSIDE_HOURS
        assert state_db.get_state(USER, BP).preferred_reminder_hour == 22

    def test_weight_defaults_to_morning(self, service, clock):
        clock.now = clock.now.replace(hour=9)
        assert service.check(USER, WEIGHT).eligible is True
        assert service.state(USER, WEIGHT).preferred_reminder_hour == 9

    def test_unsupported_domain(self, service):
        with pytest.raises(ValueError):
            service.rule_for(Domain.MEDICATION)

    def test_set_enabled(self, service):
        service.set_enabled(USER, BP, False)
        assert service.check(USER, BP).blocked_by is Gate.DISABLED

    @pytest.mark.asyncio
    async def test_snooze_retracts_and_blocks(self, service, clock, chat_provider):
        await service.run(USER, BP)

        state = await service.snooze(USER, BP)

        assert state.snoozed_until == clock.now + timedelta(hours=2)
        assert state.last_notification_handles == {}
        assert chat_provider.removed == ["chat-1"]

    @pytest.mark.asyncio
    async def test_suppress_for_a_day(self, service, clock):
        state = await service.suppress(USER, BP)
        assert state.dont_remind_until == clock.now + timedelta(hours=24)

        clock.advance(days=1, minutes=1)
        assert service.check(USER, BP).eligible is True

    @pytest.mark.asyncio
    async def test_acknowledge_without_pending_reminder(self, service, chat_provider):
        state = await service.acknowledge(USER, BP)
        assert state.last_notification_handles == {}
        assert chat_provider.removed == []
