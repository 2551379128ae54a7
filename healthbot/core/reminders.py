"""
Health Reminder Bot — Measurement reminders (blood pressure, weight).

Per user and domain, every tick walks a fixed sequence of gates and stops
at the first one that fails:

    1. reminders enabled
    2. not snoozed
    3. not suppressed ("don't bug me")
    4. no fresh measurement (today, or within the domain's freshness window)
    5. minimum gap since the last measurement
    6. current local hour within tolerance of the preferred hour
       (the preferred hour is re-learned first and persisted if it drifted)
    7. nothing sent yet today (or within the domain's resend interval)

A reminder that passes is dispatched to every enabled provider. State is
only advanced when at least one provider accepted it, so a total failure
is retried naturally on the next tick.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum

from healthbot.core.blood_pressure import is_escalated
from healthbot.core.clock import Clock, local_date, system_clock
from healthbot.core.dispatcher import NotificationDispatcher
from healthbot.core.timing import HOUR_BANDS, LOOKBACK, HourBand, preferred_reminder_hour
from healthbot.data.db import ReadingDB, ReminderStateDB
from healthbot.data.models import Domain, ReminderState
from healthbot.ports.notification_port import (
    DeliveryError,
    Notification,
    NotificationAction,
    NotificationType,
)

logger = logging.getLogger(__name__)

SNOOZE_DURATION = timedelta(hours=2)
SUPPRESS_DURATION = timedelta(hours=24)


class Gate(str, Enum):
    DISABLED = "disabled"
    SNOOZED = "snoozed"
    SUPPRESSED = "suppressed"
    MEASURED_RECENTLY = "measured_recently"
    TOO_SOON = "too_soon"
    OUTSIDE_HOURS = "outside_hours"
    ALREADY_SENT = "already_sent"


@dataclass(frozen=True)
class ReminderRule:
    """Domain-specific thresholds for the gate sequence.

    fresh_within / resend_after of None mean "the current local day".
    """

    domain: Domain
    notification_type: NotificationType
    band: HourBand
    hour_tolerance: int
    min_gap: timedelta
    fresh_within: timedelta | None = None
    resend_after: timedelta | None = None


RULES = {
    Domain.BLOOD_PRESSURE: ReminderRule(
        domain=Domain.BLOOD_PRESSURE,
        notification_type=NotificationType.BLOOD_PRESSURE,
        band=HOUR_BANDS[Domain.BLOOD_PRESSURE],
        hour_tolerance=1,
        min_gap=timedelta(hours=12),
    ),
    Domain.WEIGHT: ReminderRule(
        domain=Domain.WEIGHT,
        notification_type=NotificationType.WEIGHT,
        band=HOUR_BANDS[Domain.WEIGHT],
        hour_tolerance=2,
        min_gap=timedelta(days=5),
        fresh_within=timedelta(days=7),
        resend_after=timedelta(days=7),
    ),
}


@dataclass(frozen=True)
class Decision:
    eligible: bool
    blocked_by: Gate | None = None
    preferred_hour: int | None = None


def suppression_gate(
    state: ReminderState,
    last_measured_at: datetime | None,
    now: datetime,
    tz: tzinfo,
    rule: ReminderRule,
) -> Gate | None:
    """Gates 1-5: everything that does not depend on the time of day."""
    if not state.enabled:
        return Gate.DISABLED
    if state.snoozed_until is not None and now < state.snoozed_until:
        return Gate.SNOOZED
    if state.dont_remind_until is not None and now < state.dont_remind_until:
        return Gate.SUPPRESSED
    if last_measured_at is not None:
        if local_date(last_measured_at, tz) == local_date(now, tz):
            return Gate.MEASURED_RECENTLY
        if rule.fresh_within is not None and now - last_measured_at < rule.fresh_within:
            return Gate.MEASURED_RECENTLY
        if now - last_measured_at < rule.min_gap:
            return Gate.TOO_SOON
    return None


def evaluate(
    state: ReminderState,
    last_measured_at: datetime | None,
    now: datetime,
    tz: tzinfo,
    rule: ReminderRule,
    preferred_hour: int | None = None,
) -> Decision:
    """Run all seven gates in order. Pure: same inputs, same decision."""
    blocked = suppression_gate(state, last_measured_at, now, tz, rule)
    if blocked is not None:
        return Decision(False, blocked)

    hour = state.preferred_reminder_hour if preferred_hour is None else preferred_hour
    current_hour = now.astimezone(tz).hour
    if abs(current_hour - hour) > rule.hour_tolerance:
        return Decision(False, Gate.OUTSIDE_HOURS, hour)

    last_sent = state.last_notification_sent_at
    if last_sent is not None:
        if local_date(last_sent, tz) >= local_date(now, tz):
            return Decision(False, Gate.ALREADY_SENT, hour)
        if rule.resend_after is not None and now - last_sent < rule.resend_after:
            return Decision(False, Gate.ALREADY_SENT, hour)

    return Decision(True, None, hour)


def build_reminder(domain: Domain, enhanced: bool = False) -> Notification:
    if domain is Domain.BLOOD_PRESSURE:
        body = ""
        if enhanced:
            body += (
                "⚠️ Your recent readings have been higher than usual. "
                "Regular monitoring is important.\n\n"
            )
        body += "Please take a moment to measure and record your BP."
        return Notification(
            type=NotificationType.BLOOD_PRESSURE,
            title="📊 Time to measure your blood pressure",
            body=body,
            data={"domain": domain.value, "enhanced": enhanced},
            actions=(
                NotificationAction("bp_confirm", "✅ Confirm"),
                NotificationAction("bp_snooze", "⏰ Snooze (2h)"),
                NotificationAction("bp_dontbug", "🔇 Don't Bug Me (24h)"),
            ),
        )
    if domain is Domain.WEIGHT:
        return Notification(
            type=NotificationType.WEIGHT,
            title="⚖️ Time to track your weight",
            body=(
                "It's been about a week since your last measurement. "
                "Regular tracking helps you stay on top of your goals!"
            ),
            data={"domain": domain.value},
            actions=(
                NotificationAction("weight_confirm", "✅ Confirm"),
                NotificationAction("weight_snooze", "⏰ Snooze (2h)"),
                NotificationAction("weight_dontbug", "🔇 Don't Bug Me (24h)"),
            ),
        )
    raise ValueError(f"no measurement reminder for domain {domain.value}")


class ReminderService:
    """Eligibility, dispatch and user controls for measurement reminders."""

    def __init__(
        self,
        state_db: ReminderStateDB,
        reading_db: ReadingDB,
        dispatcher: NotificationDispatcher,
        clock: Clock = system_clock,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._state_db = state_db
        self._reading_db = reading_db
        self._dispatcher = dispatcher
        self._clock = clock
        self._tz = tz

    @staticmethod
    def rule_for(domain: Domain) -> ReminderRule:
        try:
            return RULES[domain]
        except KeyError:
            raise ValueError(f"domain {domain.value} has no reminder rules") from None

    def _last_measured_at(self, user_id: int, domain: Domain) -> datetime | None:
        if domain is Domain.BLOOD_PRESSURE:
            reading = self._reading_db.get_last_bp_reading(user_id)
        else:
            reading = self._reading_db.get_last_weight_log(user_id)
        return reading.measured_at if reading else None

    def _recent_timestamps(self, user_id: int, domain: Domain, since: datetime) -> list[datetime]:
        if domain is Domain.BLOOD_PRESSURE:
            rows = self._reading_db.list_bp_readings(user_id, since=since)
        else:
            rows = self._reading_db.list_weight_logs(user_id, since=since)
        return [r.measured_at for r in rows]

    def refresh_preferred_hour(
        self, user_id: int, state: ReminderState, now: datetime
    ) -> int:
        """Re-learn the preferred hour; persist only when it changed."""
        rule = self.rule_for(state.domain)
        hour = preferred_reminder_hour(
            self._recent_timestamps(user_id, state.domain, now - LOOKBACK), rule.band, self._tz
        )
        if hour != state.preferred_reminder_hour:
            self._state_db.set_preferred_hour(user_id, state.domain, hour)
            logger.info(
                "Preferred %s reminder hour for user %d: %d -> %d",
                state.domain.value, user_id, state.preferred_reminder_hour, hour,
            )
        return hour

    def check(self, user_id: int, domain: Domain) -> Decision:
        """Decide whether a reminder is due right now (no notification is sent)."""
        rule = self.rule_for(domain)
        now = self._clock()
        state = self._state_db.get_state(user_id, domain)
        last_measured_at = self._last_measured_at(user_id, domain)

        blocked = suppression_gate(state, last_measured_at, now, self._tz, rule)
        if blocked is not None:
            return Decision(False, blocked)

        hour = self.refresh_preferred_hour(user_id, state, now)
        return evaluate(state, last_measured_at, now, self._tz, rule, preferred_hour=hour)

    def is_enhanced(self, user_id: int, domain: Domain, now: datetime) -> bool:
        if domain is not Domain.BLOOD_PRESSURE:
            return False
        latest = self._reading_db.get_last_bp_reading(user_id)
        recent = self._reading_db.list_bp_readings(user_id, since=now - LOOKBACK)
        return is_escalated(latest, recent)

    async def run(self, user_id: int, domain: Domain) -> bool:
        """One tick for one user/domain. Returns True if a reminder went out."""
        decision = self.check(user_id, domain)
        if not decision.eligible:
            logger.debug(
                "No %s reminder for user %d: %s", domain.value, user_id, decision.blocked_by.value
            )
            return False

        now = self._clock()
        enhanced = self.is_enhanced(user_id, domain, now)
        try:
            receipt = await self._dispatcher.send(user_id, build_reminder(domain, enhanced))
        except DeliveryError as e:
            logger.error("Failed to send %s reminder to user %d: %s", domain.value, user_id, e)
            return False

        self._state_db.record_notification_sent(user_id, domain, now, receipt.handles)
        logger.info(
            "Sent %s reminder to user %d (enhanced: %s)", domain.value, user_id, enhanced
        )
        return True

    # --- User controls ---

    def state(self, user_id: int, domain: Domain) -> ReminderState:
        self.rule_for(domain)
        return self._state_db.get_state(user_id, domain)

    def set_enabled(self, user_id: int, domain: Domain, enabled: bool) -> ReminderState:
        self.rule_for(domain)
        return self._state_db.set_enabled(user_id, domain, enabled)

    async def snooze(
        self, user_id: int, domain: Domain, duration: timedelta = SNOOZE_DURATION
    ) -> ReminderState:
        self.rule_for(domain)
        state = self._state_db.set_snoozed_until(user_id, domain, self._clock() + duration)
        return await self._retract_last(state)

    async def suppress(
        self, user_id: int, domain: Domain, duration: timedelta = SUPPRESS_DURATION
    ) -> ReminderState:
        self.rule_for(domain)
        state = self._state_db.set_dont_remind_until(user_id, domain, self._clock() + duration)
        return await self._retract_last(state)

    async def acknowledge(self, user_id: int, domain: Domain) -> ReminderState:
        """The user is about to measure: retract the pending reminder."""
        self.rule_for(domain)
        return await self._retract_last(self._state_db.get_state(user_id, domain))

    async def _retract_last(self, state: ReminderState) -> ReminderState:
        if not state.last_notification_handles:
            return state
        await self._dispatcher.retract(state.last_notification_handles)
        return self._state_db.clear_notification_handles(state.user_id, state.domain)
