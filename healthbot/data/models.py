"""
Health Reminder Bot — Data Models.

Everything is owned by exactly one user. Readings are immutable apart from
their annotation fields; reminder state and workout sessions are mutated by
the scheduler and by user actions, but never deleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class Domain(str, Enum):
    """A tracked health category."""

    BLOOD_PRESSURE = "blood_pressure"
    WEIGHT = "weight"
    MEDICATION = "medication"
    WORKOUT = "workout"
    SLEEP = "sleep"


# Domains that carry a ReminderState row
REMINDER_DOMAINS = (Domain.BLOOD_PRESSURE, Domain.WEIGHT)

DEFAULT_REMINDER_HOUR = {
    Domain.BLOOD_PRESSURE: 20,  # evening measurement
    Domain.WEIGHT: 9,           # fasting, morning weigh-in
}


class SessionStatus(str, Enum):
    PENDING = "pending"
    NOTIFIED = "notified"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.SKIPPED)


ACTIVE_SESSION_STATUSES = frozenset(
    {SessionStatus.PENDING, SessionStatus.NOTIFIED, SessionStatus.IN_PROGRESS}
)


class IntakeStatus(str, Enum):
    PENDING = "PENDING"
    TAKEN = "TAKEN"
    MISSED = "MISSED"


# Sentinel group/variant IDs for sessions created outside any schedule
ADHOC_GROUP_ID = -1
ADHOC_VARIANT_ID = -1


@dataclass
class ReminderState:
    """Per-user, per-domain reminder gating record.

    snoozed_until (short, user-initiated) and dont_remind_until (24h
    suppression) are independent windows; both are checked before a send.
    last_notification_handles maps provider name -> handle of the last sent
    reminder so it can be retracted later.
    """

    user_id: int
    domain: Domain
    enabled: bool = True
    snoozed_until: datetime | None = None
    dont_remind_until: datetime | None = None
    last_notification_sent_at: datetime | None = None
    last_notification_handles: dict[str, str] = field(default_factory=dict)
    preferred_reminder_hour: int = 20


@dataclass
class BloodPressureReading:
    id: int
    user_id: int
    measured_at: datetime
    systolic: int
    diastolic: int
    pulse: int | None = None
    category: str = ""
    ignore_calc: bool = False     # excluded from statistics and dominant category
    notes: str = ""
    tag: str = ""


@dataclass
class WeightLog:
    id: int
    user_id: int
    measured_at: datetime
    weight: float
    weight_trend: float | None = None
    body_fat: float | None = None
    notes: str = ""


@dataclass
class Medication:
    """A medication with a schedule.

    schedule is either a legacy "HH:MM" string or JSON such as
    {"type": "weekly", "days": [1, 3], "times": ["08:00"]} (0 = Sunday).
    """

    id: int
    user_id: int
    name: str
    dosage: str
    schedule: str
    archived: bool = False
    start_date: date | None = None
    end_date: date | None = None
    inventory_count: int | None = None   # None = not tracking stock


@dataclass
class IntakeLog:
    id: int
    medication_id: int
    user_id: int
    scheduled_at: datetime
    status: IntakeStatus = IntakeStatus.PENDING
    taken_at: datetime | None = None
    last_reminded_at: datetime | None = None


@dataclass
class WorkoutGroup:
    """A named recurring workout schedule."""

    id: int
    user_id: int
    name: str
    days_of_week: str                    # JSON array, 0 = Sunday
    scheduled_time: str                  # "HH:MM"
    notification_advance_minutes: int = 15
    is_rotating: bool = False
    description: str = ""
    active: bool = True


@dataclass
class WorkoutVariant:
    id: int
    group_id: int
    name: str
    rotation_order: int | None = None    # None sorts after every ordered variant
    description: str = ""


@dataclass
class WorkoutExercise:
    id: int
    variant_id: int
    exercise_name: str
    target_sets: int
    target_reps_min: int
    target_reps_max: int | None = None
    target_weight_kg: float | None = None
    order_index: int = 0


@dataclass
class RotationState:
    group_id: int
    current_variant_id: int
    last_session_date: date | None = None


@dataclass
class WorkoutSession:
    id: int
    group_id: int
    variant_id: int
    user_id: int
    scheduled_date: date
    scheduled_time: str
    status: SessionStatus = SessionStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    snoozed_until: datetime | None = None
    snooze_count: int = 0
    notification_handles: dict[str, str] = field(default_factory=dict)
    notes: str = ""

    @property
    def is_adhoc(self) -> bool:
        return self.group_id == ADHOC_GROUP_ID and self.variant_id == ADHOC_VARIANT_ID


@dataclass
class ExerciseLog:
    id: int
    session_id: int
    exercise_id: int
    exercise_name: str
    sets_completed: int | None = None
    reps_completed: int | None = None
    weight_kg: float | None = None
    status: str = "completed"            # completed | skipped
    notes: str = ""
    logged_at: datetime | None = None


@dataclass
class PushSubscription:
    id: int
    user_id: int
    endpoint: str
    auth: str
    p256dh: str
    enabled: bool = True
