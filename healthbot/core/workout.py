"""
Health Reminder Bot — Workout sessions and rotation.

Session lifecycle:

    pending --notify--> notified --start--> in_progress --complete--> completed
    pending | notified | in_progress --skip--> skipped
    pending --start--> in_progress          (user starts before the notice)

completed and skipped are terminal. Snooze is orthogonal: it sets
snoozed_until on a non-terminal session without touching its status.

Completing a session of a rotating group moves the group's rotation pointer
to the next variant (circular, ordered by rotation_order). Ad-hoc sessions
never touch a rotation.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum

from healthbot.core.clock import (
    Clock,
    at_local_time,
    local_date,
    sunday_based_weekday,
    system_clock,
)
from healthbot.core.dispatcher import NotificationDispatcher
from healthbot.data.models import (
    ACTIVE_SESSION_STATUSES,
    ExerciseLog,
    SessionStatus,
    WorkoutGroup,
    WorkoutSession,
    WorkoutVariant,
)
from healthbot.data.workout_db import WorkoutDB
from healthbot.ports.notification_port import (
    DeliveryError,
    Notification,
    NotificationAction,
    NotificationType,
)

logger = logging.getLogger(__name__)

DEFAULT_SNOOZE = timedelta(hours=1)
STALE_AFTER = timedelta(minutes=90)
ABANDONED_AFTER = timedelta(hours=4)
RESEND_AFTER = timedelta(hours=3)
AUTO_SKIP_AFTER = timedelta(hours=6)

# Markers appended to session notes so one-off notices are sent only once
STALE_MARK = "stale_reminded"
RESENT_MARK = "resent_3h"


class ConfigurationError(Exception):
    """Workout setup that cannot be acted on (no variants, missing group)."""


class InvalidTransitionError(Exception):
    """A session event that is not allowed from the session's current status."""


class SessionNotFoundError(LookupError):
    pass


class SessionEvent(str, Enum):
    NOTIFY = "notify"
    START = "start"
    COMPLETE = "complete"
    SKIP = "skip"


TRANSITIONS: dict[SessionEvent, tuple[frozenset[SessionStatus], SessionStatus]] = {
    SessionEvent.NOTIFY: (frozenset({SessionStatus.PENDING}), SessionStatus.NOTIFIED),
    SessionEvent.START: (
        frozenset({SessionStatus.PENDING, SessionStatus.NOTIFIED}),
        SessionStatus.IN_PROGRESS,
    ),
    SessionEvent.COMPLETE: (frozenset({SessionStatus.IN_PROGRESS}), SessionStatus.COMPLETED),
    SessionEvent.SKIP: (ACTIVE_SESSION_STATUSES, SessionStatus.SKIPPED),
}


def next_status(current: SessionStatus, event: SessionEvent) -> SessionStatus:
    allowed, target = TRANSITIONS[event]
    if current not in allowed:
        raise InvalidTransitionError(f"cannot {event.value} a session that is {current.value}")
    return target


def next_variant_id(variants: Sequence[WorkoutVariant], current_variant_id: int | None) -> int:
    """The variant after current in rotation order, wrapping to the first.

    A current variant that is no longer in the group counts as position 0.
    """
    if not variants:
        raise ConfigurationError("cannot advance a rotation with no variants")
    position = 0
    for i, variant in enumerate(variants):
        if variant.id == current_variant_id:
            position = i
            break
    return variants[(position + 1) % len(variants)].id


def parse_days_of_week(raw: str) -> frozenset[int]:
    """Parse a JSON day list (0 = Sunday). Raises ValueError on bad data."""
    try:
        days = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid days_of_week {raw!r}") from e
    if not isinstance(days, list) or not all(isinstance(d, int) for d in days):
        raise ValueError(f"invalid days_of_week {raw!r}")
    return frozenset(days)


def select_next_workout(
    sessions: Iterable[WorkoutSession], today: date
) -> WorkoutSession | None:
    """Earliest non-terminal session scheduled today or later.

    Terminal sessions never qualify, whatever their snooze field says.
    """
    candidates = [
        s for s in sessions
        if s.status in ACTIVE_SESSION_STATUSES and s.scheduled_date >= today
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda s: (s.scheduled_date, s.scheduled_time, s.id))


@dataclass
class WorkoutStats:
    completed: int = 0
    skipped: int = 0
    streak: int = 0                       # consecutive completed, newest first
    last_completed_at: datetime | None = None


def summarize_sessions(sessions: Sequence[WorkoutSession]) -> WorkoutStats:
    """Counts and current streak. sessions must be newest first."""
    stats = WorkoutStats()
    streak_open = True
    for session in sessions:
        if session.status is SessionStatus.COMPLETED:
            stats.completed += 1
            if streak_open:
                stats.streak += 1
            if session.completed_at and (
                stats.last_completed_at is None or session.completed_at > stats.last_completed_at
            ):
                stats.last_completed_at = session.completed_at
        elif session.status is SessionStatus.SKIPPED:
            stats.skipped += 1
            streak_open = False
    return stats


def format_exercises(exercises) -> list[str]:
    lines = []
    for i, ex in enumerate(exercises, start=1):
        if ex.target_reps_max is not None and ex.target_reps_max != ex.target_reps_min:
            reps = f"{ex.target_reps_min}-{ex.target_reps_max}"
        else:
            reps = str(ex.target_reps_min)
        line = f"{i}. {ex.exercise_name}: {ex.target_sets} × {reps}"
        if ex.target_weight_kg is not None:
            line += f" @ {ex.target_weight_kg:.0f}kg"
        lines.append(line)
    return lines


class WorkoutService:
    """Session state machine, rotation and the per-tick workout pass."""

    def __init__(
        self,
        workout_db: WorkoutDB,
        dispatcher: NotificationDispatcher,
        clock: Clock = system_clock,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._db = workout_db
        self._dispatcher = dispatcher
        self._clock = clock
        self._tz = tz

    # --- Lookups ---

    def get_session(self, user_id: int, session_id: int) -> WorkoutSession:
        session = self._db.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError(f"workout session {session_id} not found")
        return session

    def next_workout(self, user_id: int) -> WorkoutSession | None:
        today = local_date(self._clock(), self._tz)
        sessions = self._db.list_sessions(
            user_id, statuses=ACTIVE_SESSION_STATUSES, since_date=today
        )
        return select_next_workout(sessions, today)

    def active_session(self, user_id: int) -> WorkoutSession | None:
        sessions = self._db.list_sessions(user_id, statuses=[SessionStatus.IN_PROGRESS], limit=1)
        return sessions[0] if sessions else None

    def session_title(self, session: WorkoutSession) -> str:
        if session.is_adhoc:
            return "Ad-hoc workout"
        group = self._db.get_group(session.group_id)
        variant = self._db.get_variant(session.variant_id)
        group_name = group.name if group else f"Group #{session.group_id}"
        return f"{group_name} - {variant.name}" if variant else group_name

    def history(self, user_id: int, limit: int = 10) -> list[WorkoutSession]:
        return self._db.list_sessions(user_id, limit=limit)

    def stats(self, user_id: int) -> WorkoutStats:
        return summarize_sessions(self._db.list_sessions(user_id))

    # --- Transitions ---

    def _apply(
        self,
        session: WorkoutSession,
        event: SessionEvent,
        **changes,
    ) -> WorkoutSession:
        target = next_status(session.status, event)
        if not self._db.transition_session(session.id, target, {session.status}, **changes):
            # Someone else moved the session between our read and write
            raise InvalidTransitionError(
                f"session {session.id} changed state concurrently; cannot {event.value}"
            )
        logger.info(
            "Workout session %d: %s -> %s", session.id, session.status.value, target.value
        )
        return self._db.get_session(session.id)

    async def _close_notice(self, session: WorkoutSession) -> None:
        """Clear snooze and retract the session's notification, if any."""
        if session.snoozed_until is not None:
            self._db.clear_snooze(session.id)
        if session.notification_handles:
            await self._dispatcher.retract(session.notification_handles)
            self._db.set_notification_handles(session.id, None)

    async def start(self, user_id: int, session_id: int) -> WorkoutSession:
        session = self.get_session(user_id, session_id)
        active = self.active_session(user_id)
        if active is not None and active.id != session.id:
            raise InvalidTransitionError(f"workout #{active.id} is already in progress")
        self._apply(session, SessionEvent.START, started_at=self._clock())
        await self._close_notice(session)
        return self._db.get_session(session.id)

    async def skip(self, user_id: int, session_id: int) -> WorkoutSession:
        session = self.get_session(user_id, session_id)
        self._apply(session, SessionEvent.SKIP)
        await self._close_notice(session)
        return self._db.get_session(session.id)

    def _rotation_after(self, session: WorkoutSession, on_date: date) -> tuple[int, int, date] | None:
        if session.is_adhoc:
            return None
        group = self._db.get_group(session.group_id)
        if group is None:
            raise ConfigurationError(f"workout group {session.group_id} no longer exists")
        if not group.is_rotating:
            return None
        state = self._db.get_rotation_state(group.id)
        current = state.current_variant_id if state else session.variant_id
        return group.id, next_variant_id(self._db.list_variants(group.id), current), on_date

    async def complete(self, user_id: int, session_id: int) -> WorkoutSession:
        """Finish a session and advance its group's rotation.

        If the rotation cannot advance (no variants, group gone) the session
        is still completed and ConfigurationError is raised afterwards.
        """
        session = self.get_session(user_id, session_id)
        next_status(session.status, SessionEvent.COMPLETE)
        now = self._clock()
        rotation_error: ConfigurationError | None = None
        try:
            rotation = self._rotation_after(session, local_date(now, self._tz))
        except ConfigurationError as e:
            rotation, rotation_error = None, e

        self._apply(session, SessionEvent.COMPLETE, completed_at=now, rotation=rotation)
        await self._close_notice(session)
        if rotation is not None:
            logger.info("Rotation of group %d advanced to variant %d", rotation[0], rotation[1])
        if rotation_error is not None:
            logger.warning("Session %d completed without rotation: %s", session.id, rotation_error)
            raise rotation_error
        return self._db.get_session(session.id)

    async def snooze(
        self, user_id: int, session_id: int, duration: timedelta = DEFAULT_SNOOZE
    ) -> WorkoutSession:
        session = self.get_session(user_id, session_id)
        if session.status.is_terminal:
            raise InvalidTransitionError(f"cannot snooze a session that is {session.status.value}")
        if not self._db.snooze_session(session.id, self._clock() + duration):
            raise InvalidTransitionError(f"session {session.id} changed state concurrently")
        if session.notification_handles:
            await self._dispatcher.retract(session.notification_handles)
            self._db.set_notification_handles(session.id, None)
        logger.info("Workout session %d snoozed for %s", session.id, duration)
        return self._db.get_session(session.id)

    def start_adhoc(self, user_id: int) -> WorkoutSession:
        now = self._clock()
        local_now = now.astimezone(self._tz)
        return self._db.create_adhoc_session(
            user_id, now, local_now.date(), local_now.strftime("%H:%M")
        )

    def log_exercise(
        self,
        user_id: int,
        session_id: int,
        exercise_id: int,
        exercise_name: str,
        sets_completed: int | None = None,
        reps_completed: int | None = None,
        weight_kg: float | None = None,
        status: str = "completed",
        notes: str = "",
    ) -> ExerciseLog:
        session = self.get_session(user_id, session_id)
        return self._db.log_exercise(
            session.id, exercise_id, exercise_name, self._clock(),
            sets_completed=sets_completed,
            reps_completed=reps_completed,
            weight_kg=weight_kg,
            status=status,
            notes=notes,
        )

    # --- Scheduler pass ---

    def _current_variant_id(self, group: WorkoutGroup) -> int:
        if group.is_rotating:
            state = self._db.get_rotation_state(group.id)
            if state is not None:
                return state.current_variant_id
        variants = self._db.list_variants(group.id)
        if not variants:
            raise ConfigurationError(f"workout group {group.id} has no variants")
        if group.is_rotating:
            self._db.set_rotation_state(group.id, variants[0].id)
            logger.info("Initialized rotation of group %d at variant %d", group.id, variants[0].id)
        return variants[0].id

    def _build_notice(
        self,
        session: WorkoutSession,
        group: WorkoutGroup,
        scheduled_at: datetime,
        now: datetime,
    ) -> Notification:
        variant = self._db.get_variant(session.variant_id)
        if variant is None:
            raise ConfigurationError(
                f"session {session.id} references deleted variant {session.variant_id}"
            )
        if now < scheduled_at:
            minutes = int((scheduled_at - now).total_seconds() // 60)
            lines = [f"Workout starting in {minutes} minutes", ""]
        else:
            lines = [f"Workout scheduled for {session.scheduled_time}", ""]
        lines.append(f"{group.name} - {variant.name}")
        exercises = self._db.list_exercises(variant.id)
        if exercises:
            lines.extend(["", "Exercises:", *format_exercises(exercises)])
        return Notification(
            type=NotificationType.WORKOUT,
            title=f"🏋️ {group.name} - {variant.name}",
            body="\n".join(lines),
            data={"session_id": session.id, "group_id": group.id, "variant_id": variant.id},
            actions=(
                NotificationAction(f"workout_start_{session.id}", "▶️ Start Now"),
                NotificationAction(f"workout_snooze1_{session.id}", "⏰ Snooze 1h"),
                NotificationAction(f"workout_snooze2_{session.id}", "⏰ Snooze 2h"),
                NotificationAction(f"workout_skip_{session.id}", "⏭ Skip"),
            ),
        )

    async def _notify(
        self,
        user_id: int,
        session: WorkoutSession,
        group: WorkoutGroup,
        scheduled_at: datetime,
        now: datetime,
    ) -> bool:
        notification = self._build_notice(session, group, scheduled_at, now)
        try:
            receipt = await self._dispatcher.send(user_id, notification)
        except DeliveryError as e:
            logger.error("Failed to send workout notification for session %d: %s", session.id, e)
            return False
        if session.notification_handles:
            await self._dispatcher.retract(session.notification_handles)
        self._db.set_notification_handles(session.id, receipt.handles)
        return True

    def _mark_resent(self, session: WorkoutSession) -> None:
        if RESENT_MARK not in session.notes:
            self._db.set_notes(session.id, f"{session.notes} {RESENT_MARK}".strip())

    async def _handle_active(self, user_id: int, now: datetime) -> WorkoutSession | None:
        """Nudge or close a forgotten in-progress session; return it if still active."""
        active = self.active_session(user_id)
        if active is None or active.started_at is None:
            return active
        elapsed = now - active.started_at

        if elapsed > ABANDONED_AFTER:
            self._apply(active, SessionEvent.SKIP)
            await self._close_notice(active)
            logger.info("Auto-skipped abandoned workout session %d", active.id)
            return None

        if elapsed > STALE_AFTER and STALE_MARK not in active.notes:
            notification = Notification(
                type=NotificationType.WORKOUT,
                title="🏋️ Still training?",
                body="It's been 1.5 hours. Don't forget to log your results!",
                data={"session_id": active.id},
                actions=(NotificationAction(f"workout_done_{active.id}", "✅ Finish"),),
            )
            try:
                await self._dispatcher.send(user_id, notification)
            except DeliveryError as e:
                logger.error("Failed to send stale workout reminder: %s", e)
            else:
                self._db.set_notes(active.id, f"{active.notes} {STALE_MARK}".strip())
        return active

    async def _run_group(
        self,
        user_id: int,
        group: WorkoutGroup,
        now: datetime,
        active: WorkoutSession | None,
    ) -> None:
        today = local_date(now, self._tz)
        if sunday_based_weekday(today) not in parse_days_of_week(group.days_of_week):
            return
        scheduled_at = at_local_time(today, group.scheduled_time, self._tz)

        existing = self._db.get_session_by_group_and_date(group.id, today)
        if existing is None:
            variant_id = self._current_variant_id(group)
            existing, created = self._db.get_or_create_session(
                group.id, variant_id, user_id, today, group.scheduled_time
            )
            if created:
                logger.info("Created workout session %d for group '%s'", existing.id, group.name)
        session = existing

        if session.status.is_terminal or session.status is SessionStatus.IN_PROGRESS:
            if session.status is SessionStatus.IN_PROGRESS and session.snoozed_until is not None:
                if now >= session.snoozed_until:
                    self._db.clear_snooze(session.id)
            return

        if session.snoozed_until is not None:
            if now < session.snoozed_until or active is not None:
                return
            if await self._notify(user_id, session, group, scheduled_at, now):
                self._db.clear_snooze(session.id)
                if session.status is SessionStatus.PENDING:
                    self._apply(session, SessionEvent.NOTIFY)
                # a re-notify this late stands in for the ignored-notice resend
                if now > scheduled_at + RESEND_AFTER:
                    self._mark_resent(session)
            return

        if session.status is SessionStatus.PENDING:
            notify_at = scheduled_at - timedelta(minutes=group.notification_advance_minutes)
            if active is None and now >= notify_at:
                if await self._notify(user_id, session, group, scheduled_at, now):
                    self._apply(session, SessionEvent.NOTIFY)
            return

        # notified but ignored
        if now > scheduled_at + RESEND_AFTER:
            if RESENT_MARK not in session.notes:
                # marked even if delivery failed, so the auto-skip stays reachable
                await self._notify(user_id, session, group, scheduled_at, now)
                self._mark_resent(session)
            elif now > scheduled_at + AUTO_SKIP_AFTER:
                self._apply(session, SessionEvent.SKIP)
                await self._close_notice(session)
                logger.info("Auto-skipped ignored workout session %d", session.id)

    async def run(self, user_id: int) -> None:
        """One tick of the workout pass for one user."""
        now = self._clock()
        active = await self._handle_active(user_id, now)
        for group in self._db.list_groups(user_id):
            try:
                await self._run_group(user_id, group, now, active)
            except (ValueError, ConfigurationError) as e:
                logger.warning("Skipping workout group %d for user %d: %s", group.id, user_id, e)
