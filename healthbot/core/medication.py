"""
Health Reminder Bot — Medication reminders and inventory.

Every tick:
  - each scheduled slot of today that has passed and has no intake yet gets
    a PENDING intake; medications sharing a slot are announced together
  - a pending intake older than an hour gets a follow-up, at most hourly
  - a pending intake older than a day is marked MISSED
  - once a day, at LOW_STOCK_HOUR, tracked inventories running out are listed

Every reminder's provider handles are recorded against its intakes so that
confirming the dose can retract them from the chat.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo

from healthbot.core.clock import (
    Clock,
    at_local_time,
    local_date,
    parse_hhmm,
    sunday_based_weekday,
    system_clock,
)
from healthbot.core.dispatcher import NotificationDispatcher
from healthbot.data.db import ReminderStateDB
from healthbot.data.medication_db import MedicationDB
from healthbot.data.models import IntakeLog, IntakeStatus, Medication
from healthbot.ports.notification_port import (
    DeliveryError,
    Notification,
    NotificationAction,
    NotificationType,
)

logger = logging.getLogger(__name__)

FOLLOW_UP_AFTER = timedelta(hours=1)
FOLLOW_UP_EVERY = timedelta(hours=1)
MISSED_AFTER = timedelta(hours=24)
LOW_STOCK_MARK = "low_stock_check"


class ScheduleError(ValueError):
    """A medication schedule that cannot be interpreted."""


@dataclass(frozen=True)
class ScheduleConfig:
    type: str                      # daily | weekly | as_needed
    times: tuple[str, ...] = ()
    days: frozenset[int] = frozenset()   # 0 = Sunday, weekly only


def parse_schedule(raw: str) -> ScheduleConfig:
    """Parse a legacy "HH:MM" or a JSON schedule."""
    raw = raw.strip()
    if len(raw) == 5 and raw[2] == ":":
        try:
            parse_hhmm(raw)
        except ValueError as e:
            raise ScheduleError(str(e)) from e
        return ScheduleConfig(type="daily", times=(raw,))

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ScheduleError(f"unparseable schedule {raw!r}: {e}") from e
    if not isinstance(data, dict):
        raise ScheduleError(f"schedule must be an object: {raw!r}")

    kind = data.get("type", "daily")
    if kind not in ("daily", "weekly", "as_needed"):
        raise ScheduleError(f"unknown schedule type {kind!r}")
    times = tuple(data.get("times") or ())
    for value in times:
        try:
            parse_hhmm(str(value))
        except ValueError as e:
            raise ScheduleError(str(e)) from e
    try:
        days = frozenset(int(d) for d in data.get("days") or ())
    except (TypeError, ValueError) as e:
        raise ScheduleError(f"invalid schedule days in {raw!r}") from e
    if any(d < 0 or d > 6 for d in days):
        raise ScheduleError(f"schedule days out of range in {raw!r}")
    return ScheduleConfig(type=kind, times=times, days=days)


def daily_usage(config: ScheduleConfig) -> float:
    """Average doses per day; 0 when it cannot be derived (as needed)."""
    if config.type == "daily":
        return float(len(config.times))
    if config.type == "weekly":
        return len(config.days) / 7.0 * len(config.times)
    return 0.0


def due_slots(med: Medication, config: ScheduleConfig, now: datetime, tz: tzinfo) -> list[datetime]:
    """Today's slots that have already started, within the active date range."""
    if config.type == "as_needed":
        return []
    today = local_date(now, tz)
    if config.type == "weekly" and sunday_based_weekday(today) not in config.days:
        return []
    if med.start_date is not None and today < med.start_date:
        return []
    if med.end_date is not None and today > med.end_date:
        return []
    slots = []
    for value in config.times:
        target = at_local_time(today, value, tz)
        if target <= now:
            slots.append(target)
    return slots


def days_of_stock_remaining(med: Medication) -> float | None:
    if med.inventory_count is None:
        return None
    try:
        usage = daily_usage(parse_schedule(med.schedule))
    except ScheduleError:
        return None
    if usage == 0:
        return None
    return med.inventory_count / usage


def is_low_on_stock(med: Medication, now: datetime, tz: tzinfo, threshold_days: int) -> bool:
    """Stock will not last threshold_days (or until the end date, if there is one)."""
    remaining = days_of_stock_remaining(med)
    if remaining is None:
        return False
    if med.end_date is not None:
        end = at_local_time(med.end_date, "00:00", tz)
        days_until_end = (end - now).total_seconds() / 86400
        if days_until_end <= 0:
            return False
        return remaining < days_until_end
    return remaining < threshold_days


def build_medication_message(meds: list[Medication]) -> str:
    if len(meds) == 1:
        return f"Time to take {meds[0].name} ({meds[0].dosage})"
    lines = [f"Time to take {len(meds)} medications:"]
    lines.extend(f"• {m.name} ({m.dosage})" for m in meds)
    return "\n".join(lines)


def _ids_token(intake_ids: list[int]) -> str:
    return ",".join(str(i) for i in intake_ids)


class MedicationService:
    """Medication slots, follow-ups, confirmation and stock warnings."""

    def __init__(
        self,
        med_db: MedicationDB,
        state_db: ReminderStateDB,
        dispatcher: NotificationDispatcher,
        clock: Clock = system_clock,
        tz: tzinfo = timezone.utc,
        low_stock_days: int = 7,
        low_stock_hour: int = 11,
    ) -> None:
        self._med_db = med_db
        self._state_db = state_db
        self._dispatcher = dispatcher
        self._clock = clock
        self._tz = tz
        self._low_stock_days = low_stock_days
        self._low_stock_hour = low_stock_hour

    async def run(self, user_id: int) -> None:
        await self.check_due(user_id)
        await self.check_pending(user_id)
        await self.check_low_stock(user_id)

    async def check_due(self, user_id: int) -> int:
        """Create intakes for passed slots and announce them. Returns intakes created."""
        now = self._clock()
        groups: dict[datetime, list[Medication]] = {}
        for med in self._med_db.list_medications(user_id):
            try:
                config = parse_schedule(med.schedule)
            except ScheduleError as e:
                logger.warning("Skipping medication %d with invalid schedule: %s", med.id, e)
                continue
            for target in due_slots(med, config, now, self._tz):
                if self._med_db.get_intake_for_slot(med.id, target) is None:
                    groups.setdefault(target, []).append(med)

        created = 0
        for target, meds in sorted(groups.items()):
            intakes = [self._med_db.create_intake(m.id, user_id, target) for m in meds]
            created += len(intakes)
            for med in meds:
                logger.info("Triggering medication %s (%s) for user %d", med.name, med.dosage, user_id)
            await self._announce(user_id, meds, intakes, target)
        return created

    async def _announce(
        self, user_id: int, meds: list[Medication], intakes: list[IntakeLog], target: datetime
    ) -> None:
        ids = [i.id for i in intakes]
        token = _ids_token(ids)
        notification = Notification(
            type=NotificationType.MEDICATION,
            title="💊 Medication Reminder",
            body=build_medication_message(meds),
            data={"intake_ids": ids, "scheduled_at": target.isoformat()},
            actions=(
                NotificationAction(f"med_confirm:{token}", "✅ Taken"),
                NotificationAction(f"med_snooze:{token}", "⏰ Snooze (1h)"),
            ),
        )
        try:
            receipt = await self._dispatcher.send(user_id, notification)
        except DeliveryError as e:
            logger.error("Failed to send medication notification to user %d: %s", user_id, e)
            return
        # follow-ups count from this first reminder, not from the slot time
        now = self._clock()
        for intake in intakes:
            self._med_db.mark_reminded(intake.id, now)
            self._med_db.add_reminder_handles(intake.id, receipt.handles)

    async def check_pending(self, user_id: int) -> int:
        """Follow up on unconfirmed intakes. Returns follow-ups sent."""
        now = self._clock()
        sent = 0
        for intake in self._med_db.list_pending_intakes(user_id):
            age = now - intake.scheduled_at
            if age >= MISSED_AFTER:
                if self._med_db.mark_missed(intake.id):
                    logger.info("Intake %d for user %d marked missed", intake.id, user_id)
                    await self._dispatcher.retract(self._med_db.pop_reminder_handles(intake.id))
                continue
            if age < FOLLOW_UP_AFTER:
                continue
            if intake.last_reminded_at is not None and now - intake.last_reminded_at < FOLLOW_UP_EVERY:
                continue

            med = self._med_db.get_medication(intake.medication_id)
            if med is None:
                continue
            local_time = intake.scheduled_at.astimezone(self._tz).strftime("%H:%M")
            notification = Notification(
                type=NotificationType.MEDICATION,
                title="🔔 Medication Reminder",
                body=(
                    f"🔔 REMINDER: You haven't confirmed taking {med.name} "
                    f"({med.dosage}) yet on {local_time}!"
                ),
                data={"intake_ids": [intake.id]},
                actions=(NotificationAction(f"med_confirm:{intake.id}", "✅ Taken"),),
            )
            try:
                receipt = await self._dispatcher.send(user_id, notification)
            except DeliveryError as e:
                logger.error("Failed to send intake follow-up to user %d: %s", user_id, e)
                continue
            self._med_db.mark_reminded(intake.id, now)
            self._med_db.add_reminder_handles(intake.id, receipt.handles)
            sent += 1
        return sent

    def low_stock(self, user_id: int) -> list[Medication]:
        now = self._clock()
        return [
            med for med in self._med_db.list_medications(user_id)
            if is_low_on_stock(med, now, self._tz, self._low_stock_days)
        ]

    async def check_low_stock(self, user_id: int) -> bool:
        """Once per local day, during the configured hour. Returns True if warned."""
        now = self._clock()
        if now.astimezone(self._tz).hour != self._low_stock_hour:
            return False
        last = self._state_db.get_mark(user_id, LOW_STOCK_MARK)
        if last is not None and local_date(last, self._tz) >= local_date(now, self._tz):
            return False

        meds = self.low_stock(user_id)
        if not meds:
            self._state_db.set_mark(user_id, LOW_STOCK_MARK, now)
            return False

        lines = [f"The following medications are running low (< {self._low_stock_days} days):", ""]
        for med in meds:
            remaining = days_of_stock_remaining(med)
            suffix = f" (~{remaining:.0f} days left)" if remaining is not None else ""
            lines.append(f"• {med.name}: {med.inventory_count} units{suffix}")
        lines.extend(["", "Please restock soon!"])
        notification = Notification(
            type=NotificationType.LOW_STOCK,
            title="⚠️ Low Stock Warning",
            body="\n".join(lines),
            data={"medication_ids": [m.id for m in meds]},
        )
        try:
            await self._dispatcher.send(user_id, notification)
        except DeliveryError as e:
            logger.error("Failed to send low stock warning to user %d: %s", user_id, e)
            return False
        self._state_db.set_mark(user_id, LOW_STOCK_MARK, now)
        return True

    # --- User actions ---

    def _owned_intakes(self, user_id: int, intake_ids: list[int]) -> list[IntakeLog]:
        intakes = []
        for intake_id in intake_ids:
            intake = self._med_db.get_intake(intake_id)
            if intake is None or intake.user_id != user_id:
                logger.warning("Ignoring unknown intake %d for user %d", intake_id, user_id)
                continue
            intakes.append(intake)
        return intakes

    async def confirm(self, user_id: int, intake_ids: list[int]) -> list[int]:
        """Mark intakes TAKEN, use up stock and retract their reminders.

        Returns the IDs that were actually pending and are now taken.
        """
        now = self._clock()
        confirmed = []
        handles: set[tuple[str, str]] = set()
        for intake in self._owned_intakes(user_id, intake_ids):
            if intake.status is IntakeStatus.PENDING and self._med_db.mark_taken(intake.id, now):
                self._med_db.decrement_inventory(intake.medication_id)
                confirmed.append(intake.id)
            handles.update(self._med_db.pop_reminder_handles(intake.id))
        await self._dispatcher.retract(sorted(handles))
        logger.info("User %d confirmed intakes %s", user_id, confirmed)
        return confirmed

    async def snooze(self, user_id: int, intake_ids: list[int]) -> int:
        """Restart the follow-up timer and clear the reminder from the chat."""
        now = self._clock()
        handles: set[tuple[str, str]] = set()
        snoozed = 0
        for intake in self._owned_intakes(user_id, intake_ids):
            if intake.status is not IntakeStatus.PENDING:
                continue
            self._med_db.mark_reminded(intake.id, now)
            handles.update(self._med_db.pop_reminder_handles(intake.id))
            snoozed += 1
        await self._dispatcher.retract(sorted(handles))
        return snoozed
