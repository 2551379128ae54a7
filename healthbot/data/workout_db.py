"""
Health Reminder Bot — Workout Database.

Groups (recurring schedules), variants and their exercises, per-group
rotation pointers, sessions and per-session exercise logs. Sessions are
history and are never deleted.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from datetime import date, datetime

from healthbot.data.db import (
    SQLiteStore,
    dump_handles,
    load_handles,
    from_db_date,
    from_db_ts,
    to_db_ts,
)
from healthbot.data.models import (
    ADHOC_GROUP_ID,
    ADHOC_VARIANT_ID,
    ExerciseLog,
    RotationState,
    SessionStatus,
    WorkoutExercise,
    WorkoutGroup,
    WorkoutSession,
    WorkoutVariant,
)

logger = logging.getLogger(__name__)


class WorkoutDB(SQLiteStore):
    """SQLite-backed storage for workout schedules and session history."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workout_groups (
                    id                            INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id                       INTEGER NOT NULL,
                    name                          TEXT    NOT NULL,
                    description                   TEXT    NOT NULL DEFAULT '',
                    is_rotating                   INTEGER NOT NULL DEFAULT 0,
                    days_of_week                  TEXT    NOT NULL DEFAULT '[]',
                    scheduled_time                TEXT    NOT NULL,
                    notification_advance_minutes  INTEGER NOT NULL DEFAULT 15,
                    active                        INTEGER NOT NULL DEFAULT 1
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workout_variants (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    group_id        INTEGER NOT NULL
                                    REFERENCES workout_groups(id) ON DELETE CASCADE,
                    name            TEXT    NOT NULL,
                    rotation_order  INTEGER,
                    description     TEXT    NOT NULL DEFAULT ''
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workout_exercises (
                    id                INTEGER PRIMARY KEY AUTOINCREMENT,
                    variant_id        INTEGER NOT NULL
                                      REFERENCES workout_variants(id) ON DELETE CASCADE,
                    exercise_name     TEXT    NOT NULL,
                    target_sets       INTEGER NOT NULL,
                    target_reps_min   INTEGER NOT NULL,
                    target_reps_max   INTEGER,
                    target_weight_kg  REAL,
                    order_index       INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workout_rotation_state (
                    group_id            INTEGER PRIMARY KEY
                                        REFERENCES workout_groups(id) ON DELETE CASCADE,
                    current_variant_id  INTEGER NOT NULL,
                    last_session_date   TEXT
                )
            """)
            # group_id / variant_id carry no foreign key: ad-hoc sessions use -1
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workout_sessions (
                    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
                    group_id              INTEGER NOT NULL,
                    variant_id            INTEGER NOT NULL,
                    user_id               INTEGER NOT NULL,
                    scheduled_date        TEXT    NOT NULL,
                    scheduled_time        TEXT    NOT NULL,
                    status                TEXT    NOT NULL DEFAULT 'pending',
                    started_at            TEXT,
                    completed_at          TEXT,
                    snoozed_until         TEXT,
                    snooze_count          INTEGER NOT NULL DEFAULT 0,
                    notification_handles  TEXT,
                    notes                 TEXT    NOT NULL DEFAULT ''
                )
            """)
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_group_date "
                f"ON workout_sessions(group_id, scheduled_date) WHERE group_id != {ADHOC_GROUP_ID}"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workout_exercise_logs (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id      INTEGER NOT NULL
                                    REFERENCES workout_sessions(id) ON DELETE CASCADE,
                    exercise_id     INTEGER NOT NULL,
                    exercise_name   TEXT    NOT NULL,
                    sets_completed  INTEGER,
                    reps_completed  INTEGER,
                    weight_kg       REAL,
                    status          TEXT    NOT NULL DEFAULT 'completed',
                    notes           TEXT    NOT NULL DEFAULT '',
                    logged_at       TEXT    NOT NULL
                )
            """)
        logger.debug("Workout tables initialized at %s", self._db_path)

    # --- Row mappers ---

    @staticmethod
    def _row_to_group(row: sqlite3.Row) -> WorkoutGroup:
        return WorkoutGroup(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            days_of_week=row["days_of_week"],
            scheduled_time=row["scheduled_time"],
            notification_advance_minutes=row["notification_advance_minutes"],
            is_rotating=bool(row["is_rotating"]),
            description=row["description"],
            active=bool(row["active"]),
        )

    @staticmethod
    def _row_to_variant(row: sqlite3.Row) -> WorkoutVariant:
        return WorkoutVariant(
            id=row["id"],
            group_id=row["group_id"],
            name=row["name"],
            rotation_order=row["rotation_order"],
            description=row["description"],
        )

    @staticmethod
    def _row_to_exercise(row: sqlite3.Row) -> WorkoutExercise:
        return WorkoutExercise(
            id=row["id"],
            variant_id=row["variant_id"],
            exercise_name=row["exercise_name"],
            target_sets=row["target_sets"],
            target_reps_min=row["target_reps_min"],
            target_reps_max=row["target_reps_max"],
            target_weight_kg=row["target_weight_kg"],
            order_index=row["order_index"],
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> WorkoutSession:
        return WorkoutSession(
            id=row["id"],
            group_id=row["group_id"],
            variant_id=row["variant_id"],
            user_id=row["user_id"],
            scheduled_date=from_db_date(row["scheduled_date"]),
            scheduled_time=row["scheduled_time"],
            status=SessionStatus(row["status"]),
            started_at=from_db_ts(row["started_at"]),
            completed_at=from_db_ts(row["completed_at"]),
            snoozed_until=from_db_ts(row["snoozed_until"]),
            snooze_count=row["snooze_count"],
            notification_handles=load_handles(row["notification_handles"]),
            notes=row["notes"],
        )

    @staticmethod
    def _row_to_exercise_log(row: sqlite3.Row) -> ExerciseLog:
        return ExerciseLog(
            id=row["id"],
            session_id=row["session_id"],
            exercise_id=row["exercise_id"],
            exercise_name=row["exercise_name"],
            sets_completed=row["sets_completed"],
            reps_completed=row["reps_completed"],
            weight_kg=row["weight_kg"],
            status=row["status"],
            notes=row["notes"],
            logged_at=from_db_ts(row["logged_at"]),
        )

    # --- Groups ---

    def create_group(
        self,
        user_id: int,
        name: str,
        days_of_week: str,
        scheduled_time: str,
        is_rotating: bool = False,
        notification_advance_minutes: int = 15,
        description: str = "",
    ) -> WorkoutGroup:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO workout_groups
                    (user_id, name, description, is_rotating, days_of_week,
                     scheduled_time, notification_advance_minutes, active)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1)
                """,
                (
                    user_id, name, description, int(is_rotating), days_of_week,
                    scheduled_time, notification_advance_minutes,
                ),
            )
            group_id = cursor.lastrowid

        logger.info("Created workout group '%s' for user %d", name, user_id)
        return WorkoutGroup(
            id=group_id,
            user_id=user_id,
            name=name,
            days_of_week=days_of_week,
            scheduled_time=scheduled_time,
            notification_advance_minutes=notification_advance_minutes,
            is_rotating=is_rotating,
            description=description,
        )

    def get_group(self, group_id: int) -> WorkoutGroup | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workout_groups WHERE id = ?", (group_id,)
            ).fetchone()
        return self._row_to_group(row) if row else None

    def list_groups(self, user_id: int, active_only: bool = True) -> list[WorkoutGroup]:
        query = "SELECT * FROM workout_groups WHERE user_id = ?"
        if active_only:
            query += " AND active = 1"
        query += " ORDER BY name"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._row_to_group(r) for r in rows]

    def set_group_active(self, group_id: int, active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE workout_groups SET active = ? WHERE id = ?", (int(active), group_id)
            )

    # --- Variants & exercises ---

    def create_variant(
        self,
        group_id: int,
        name: str,
        rotation_order: int | None = None,
        description: str = "",
    ) -> WorkoutVariant:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO workout_variants (group_id, name, rotation_order, description)
                VALUES (?, ?, ?, ?)
                """,
                (group_id, name, rotation_order, description),
            )
            variant_id = cursor.lastrowid
        return WorkoutVariant(
            id=variant_id,
            group_id=group_id,
            name=name,
            rotation_order=rotation_order,
            description=description,
        )

    def get_variant(self, variant_id: int) -> WorkoutVariant | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workout_variants WHERE id = ?", (variant_id,)
            ).fetchone()
        return self._row_to_variant(row) if row else None

    def list_variants(self, group_id: int) -> list[WorkoutVariant]:
        """Variants in rotation order; unordered variants last, then by name."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM workout_variants WHERE group_id = ?
                ORDER BY rotation_order IS NULL, rotation_order, name, id
                """,
                (group_id,),
            ).fetchall()
        return [self._row_to_variant(r) for r in rows]

    def delete_variant(self, variant_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM workout_variants WHERE id = ?", (variant_id,))
        return cursor.rowcount > 0

    def add_exercise(
        self,
        variant_id: int,
        exercise_name: str,
        target_sets: int,
        target_reps_min: int,
        target_reps_max: int | None = None,
        target_weight_kg: float | None = None,
        order_index: int = 0,
    ) -> WorkoutExercise:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO workout_exercises
                    (variant_id, exercise_name, target_sets, target_reps_min,
                     target_reps_max, target_weight_kg, order_index)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    variant_id, exercise_name, target_sets, target_reps_min,
                    target_reps_max, target_weight_kg, order_index,
                ),
            )
            exercise_id = cursor.lastrowid
        return WorkoutExercise(
            id=exercise_id,
            variant_id=variant_id,
            exercise_name=exercise_name,
            target_sets=target_sets,
            target_reps_min=target_reps_min,
            target_reps_max=target_reps_max,
            target_weight_kg=target_weight_kg,
            order_index=order_index,
        )

    def list_exercises(self, variant_id: int) -> list[WorkoutExercise]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workout_exercises WHERE variant_id = ? ORDER BY order_index, id",
                (variant_id,),
            ).fetchall()
        return [self._row_to_exercise(r) for r in rows]

    # --- Rotation ---

    def get_rotation_state(self, group_id: int) -> RotationState | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workout_rotation_state WHERE group_id = ?", (group_id,)
            ).fetchone()
        if row is None:
            return None
        return RotationState(
            group_id=row["group_id"],
            current_variant_id=row["current_variant_id"],
            last_session_date=from_db_date(row["last_session_date"]),
        )

    def set_rotation_state(
        self,
        group_id: int,
        variant_id: int,
        last_session_date: date | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Point the rotation at a variant. Joins the caller's transaction if given."""
        sql = """
            INSERT INTO workout_rotation_state (group_id, current_variant_id, last_session_date)
            VALUES (?, ?, ?)
            ON CONFLICT(group_id) DO UPDATE SET
                current_variant_id = excluded.current_variant_id,
                last_session_date = COALESCE(excluded.last_session_date, last_session_date)
        """
        params = (
            group_id, variant_id,
            last_session_date.isoformat() if last_session_date else None,
        )
        if conn is not None:
            conn.execute(sql, params)
            return
        with self._connect() as own:
            own.execute(sql, params)

    # --- Sessions ---

    def get_session(self, session_id: int) -> WorkoutSession | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workout_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_group_and_date(
        self, group_id: int, scheduled_date: date
    ) -> WorkoutSession | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workout_sessions WHERE group_id = ? AND scheduled_date = ?",
                (group_id, scheduled_date.isoformat()),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_or_create_session(
        self,
        group_id: int,
        variant_id: int,
        user_id: int,
        scheduled_date: date,
        scheduled_time: str,
    ) -> tuple[WorkoutSession, bool]:
        """One session per group per date. Returns (session, created)."""
        existing = self.get_session_by_group_and_date(group_id, scheduled_date)
        if existing is not None:
            return existing, False
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO workout_sessions
                        (group_id, variant_id, user_id, scheduled_date, scheduled_time, status)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        group_id, variant_id, user_id, scheduled_date.isoformat(),
                        scheduled_time, SessionStatus.PENDING.value,
                    ),
                )
                session_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            # Lost a race with another writer for the same (group, date)
            return self.get_session_by_group_and_date(group_id, scheduled_date), False
        return self.get_session(session_id), True

    def create_adhoc_session(
        self, user_id: int, started_at: datetime, scheduled_date: date, scheduled_time: str
    ) -> WorkoutSession:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO workout_sessions
                    (group_id, variant_id, user_id, scheduled_date, scheduled_time,
                     status, started_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ADHOC_GROUP_ID, ADHOC_VARIANT_ID, user_id, scheduled_date.isoformat(),
                    scheduled_time, SessionStatus.IN_PROGRESS.value, to_db_ts(started_at),
                ),
            )
            session_id = cursor.lastrowid
        logger.info("Started ad-hoc workout session %d for user %d", session_id, user_id)
        return self.get_session(session_id)

    def list_sessions(
        self,
        user_id: int,
        statuses: Iterable[SessionStatus] | None = None,
        since_date: date | None = None,
        limit: int | None = None,
    ) -> list[WorkoutSession]:
        """Sessions newest first."""
        query = "SELECT * FROM workout_sessions WHERE user_id = ?"
        params: list[object] = [user_id]
        if statuses is not None:
            values = [s.value for s in statuses]
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        if since_date is not None:
            query += " AND scheduled_date >= ?"
            params.append(since_date.isoformat())
        query += " ORDER BY scheduled_date DESC, scheduled_time DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_session(r) for r in rows]

    def transition_session(
        self,
        session_id: int,
        new_status: SessionStatus,
        from_statuses: Iterable[SessionStatus],
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        rotation: tuple[int, int, date] | None = None,
    ) -> bool:
        """Compare-and-set a session's status.

        The update only applies while the session is still in one of
        from_statuses. When rotation=(group_id, next_variant_id, date) is
        given, the rotation pointer moves in the same transaction.
        Returns False if the session was not in an allowed status.
        """
        allowed = [s.value for s in from_statuses]
        assignments = ["status = ?"]
        params: list[object] = [new_status.value]
        if started_at is not None:
            assignments.append("started_at = ?")
            params.append(to_db_ts(started_at))
        if completed_at is not None:
            assignments.append("completed_at = ?")
            params.append(to_db_ts(completed_at))
        params.append(session_id)
        params.extend(allowed)

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE workout_sessions SET {', '.join(assignments)} "
                f"WHERE id = ? AND status IN ({', '.join('?' for _ in allowed)})",
                params,
            )
            if cursor.rowcount == 0:
                return False
            if rotation is not None:
                group_id, variant_id, on_date = rotation
                self.set_rotation_state(group_id, variant_id, on_date, conn=conn)
        return True

    def snooze_session(self, session_id: int, until: datetime) -> bool:
        """Open a snooze window on a non-terminal session."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE workout_sessions
                SET snoozed_until = ?, snooze_count = snooze_count + 1
                WHERE id = ? AND status NOT IN (?, ?)
                """,
                (
                    to_db_ts(until), session_id,
                    SessionStatus.COMPLETED.value, SessionStatus.SKIPPED.value,
                ),
            )
        return cursor.rowcount > 0

    def clear_snooze(self, session_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE workout_sessions SET snoozed_until = NULL WHERE id = ?", (session_id,)
            )

    def set_notification_handles(self, session_id: int, handles: dict[str, str] | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE workout_sessions SET notification_handles = ? WHERE id = ?",
                (dump_handles(handles), session_id),
            )

    def set_notes(self, session_id: int, notes: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE workout_sessions SET notes = ? WHERE id = ?", (notes, session_id)
            )

    # --- Exercise logs ---

    def log_exercise(
        self,
        session_id: int,
        exercise_id: int,
        exercise_name: str,
        logged_at: datetime,
        sets_completed: int | None = None,
        reps_completed: int | None = None,
        weight_kg: float | None = None,
        status: str = "completed",
        notes: str = "",
    ) -> ExerciseLog:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO workout_exercise_logs
                    (session_id, exercise_id, exercise_name, sets_completed,
                     reps_completed, weight_kg, status, notes, logged_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id, exercise_id, exercise_name, sets_completed,
                    reps_completed, weight_kg, status, notes, to_db_ts(logged_at),
                ),
            )
            log_id = cursor.lastrowid
        return ExerciseLog(
            id=log_id,
            session_id=session_id,
            exercise_id=exercise_id,
            exercise_name=exercise_name,
            sets_completed=sets_completed,
            reps_completed=reps_completed,
            weight_kg=weight_kg,
            status=status,
            notes=notes,
            logged_at=from_db_ts(to_db_ts(logged_at)),
        )

    def list_exercise_logs(self, session_id: int) -> list[ExerciseLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workout_exercise_logs WHERE session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
        return [self._row_to_exercise_log(r) for r in rows]
