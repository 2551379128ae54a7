"""
Health Reminder Bot — Medication Database.

Medications, their intake log, the handles of every reminder message sent
for an intake (so they can be retracted once the dose is confirmed), and
inventory counts.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime

from healthbot.data.db import SQLiteStore, from_db_date, from_db_ts, to_db_ts
from healthbot.data.models import IntakeLog, IntakeStatus, Medication

logger = logging.getLogger(__name__)


class MedicationDB(SQLiteStore):
    """SQLite-backed storage for medications and intake history."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS medications (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id          INTEGER NOT NULL,
                    name             TEXT    NOT NULL,
                    dosage           TEXT    NOT NULL DEFAULT '',
                    schedule         TEXT    NOT NULL,
                    archived         INTEGER NOT NULL DEFAULT 0,
                    start_date       TEXT,
                    end_date         TEXT,
                    inventory_count  INTEGER
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS intake_log (
                    id                INTEGER PRIMARY KEY AUTOINCREMENT,
                    medication_id     INTEGER NOT NULL
                                      REFERENCES medications(id) ON DELETE CASCADE,
                    user_id           INTEGER NOT NULL,
                    scheduled_at      TEXT    NOT NULL,
                    taken_at          TEXT,
                    status            TEXT    NOT NULL DEFAULT 'PENDING',
                    last_reminded_at  TEXT,
                    UNIQUE (medication_id, scheduled_at)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS intake_reminders (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    intake_id  INTEGER NOT NULL
                               REFERENCES intake_log(id) ON DELETE CASCADE,
                    provider   TEXT    NOT NULL,
                    handle     TEXT    NOT NULL
                )
            """)
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(intake_log)").fetchall()
            }
            if "last_reminded_at" not in existing_cols:
                conn.execute("ALTER TABLE intake_log ADD COLUMN last_reminded_at TEXT")
        logger.debug("Medication tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_medication(row: sqlite3.Row) -> Medication:
        return Medication(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            dosage=row["dosage"],
            schedule=row["schedule"],
            archived=bool(row["archived"]),
            start_date=from_db_date(row["start_date"]),
            end_date=from_db_date(row["end_date"]),
            inventory_count=row["inventory_count"],
        )

    @staticmethod
    def _row_to_intake(row: sqlite3.Row) -> IntakeLog:
        return IntakeLog(
            id=row["id"],
            medication_id=row["medication_id"],
            user_id=row["user_id"],
            scheduled_at=from_db_ts(row["scheduled_at"]),
            status=IntakeStatus(row["status"]),
            taken_at=from_db_ts(row["taken_at"]),
            last_reminded_at=from_db_ts(row["last_reminded_at"]),
        )

    # --- Medications ---

    def add_medication(
        self,
        user_id: int,
        name: str,
        schedule: str,
        dosage: str = "",
        start_date: date | None = None,
        end_date: date | None = None,
        inventory_count: int | None = None,
    ) -> Medication:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO medications
                    (user_id, name, dosage, schedule, archived,
                     start_date, end_date, inventory_count)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    user_id, name, dosage, schedule,
                    start_date.isoformat() if start_date else None,
                    end_date.isoformat() if end_date else None,
                    inventory_count,
                ),
            )
            med_id = cursor.lastrowid

        logger.info("Added medication '%s' for user %d", name, user_id)
        return Medication(
            id=med_id,
            user_id=user_id,
            name=name,
            dosage=dosage,
            schedule=schedule,
            start_date=start_date,
            end_date=end_date,
            inventory_count=inventory_count,
        )

    def get_medication(self, med_id: int) -> Medication | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM medications WHERE id = ?", (med_id,)).fetchone()
        return self._row_to_medication(row) if row else None

    def list_medications(self, user_id: int, include_archived: bool = False) -> list[Medication]:
        query = "SELECT * FROM medications WHERE user_id = ?"
        if not include_archived:
            query += " AND archived = 0"
        query += " ORDER BY name"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._row_to_medication(r) for r in rows]

    def archive_medication(self, med_id: int, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE medications SET archived = 1 WHERE id = ? AND user_id = ?",
                (med_id, user_id),
            )
        return cursor.rowcount > 0

    def set_inventory(self, med_id: int, count: int | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE medications SET inventory_count = ? WHERE id = ?", (count, med_id)
            )

    def decrement_inventory(self, med_id: int, amount: int = 1) -> None:
        """Use up stock; untracked (NULL) inventory stays untracked."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE medications SET inventory_count = MAX(inventory_count - ?, 0)
                WHERE id = ? AND inventory_count IS NOT NULL
                """,
                (amount, med_id),
            )

    # --- Intake log ---

    def get_intake(self, intake_id: int) -> IntakeLog | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM intake_log WHERE id = ?", (intake_id,)).fetchone()
        return self._row_to_intake(row) if row else None

    def get_intake_for_slot(self, med_id: int, scheduled_at: datetime) -> IntakeLog | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM intake_log WHERE medication_id = ? AND scheduled_at = ?",
                (med_id, to_db_ts(scheduled_at)),
            ).fetchone()
        return self._row_to_intake(row) if row else None

    def create_intake(self, med_id: int, user_id: int, scheduled_at: datetime) -> IntakeLog:
        """Insert a PENDING intake for a slot, or return the existing one."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO intake_log (medication_id, user_id, scheduled_at, status)
                VALUES (?, ?, ?, ?)
                """,
                (med_id, user_id, to_db_ts(scheduled_at), IntakeStatus.PENDING.value),
            )
            row = conn.execute(
                "SELECT * FROM intake_log WHERE medication_id = ? AND scheduled_at = ?",
                (med_id, to_db_ts(scheduled_at)),
            ).fetchone()
        return self._row_to_intake(row)

    def list_pending_intakes(self, user_id: int) -> list[IntakeLog]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM intake_log WHERE user_id = ? AND status = ?
                ORDER BY scheduled_at ASC, id ASC
                """,
                (user_id, IntakeStatus.PENDING.value),
            ).fetchall()
        return [self._row_to_intake(r) for r in rows]

    def list_intakes(self, user_id: int, since: datetime | None = None) -> list[IntakeLog]:
        query = "SELECT * FROM intake_log WHERE user_id = ?"
        params: list[object] = [user_id]
        if since is not None:
            query += " AND scheduled_at >= ?"
            params.append(to_db_ts(since))
        query += " ORDER BY scheduled_at ASC, id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_intake(r) for r in rows]

    def mark_taken(self, intake_id: int, taken_at: datetime) -> bool:
        """PENDING -> TAKEN. Returns False when the intake was not pending."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE intake_log SET status = ?, taken_at = ? WHERE id = ? AND status = ?",
                (
                    IntakeStatus.TAKEN.value, to_db_ts(taken_at),
                    intake_id, IntakeStatus.PENDING.value,
                ),
            )
        return cursor.rowcount > 0

    def mark_missed(self, intake_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE intake_log SET status = ? WHERE id = ? AND status = ?",
                (IntakeStatus.MISSED.value, intake_id, IntakeStatus.PENDING.value),
            )
        return cursor.rowcount > 0

    def mark_reminded(self, intake_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE intake_log SET last_reminded_at = ? WHERE id = ?",
                (to_db_ts(at), intake_id),
            )

    # --- Reminder handles ---

    def add_reminder_handles(self, intake_id: int, handles: dict[str, str]) -> None:
        if not handles:
            return
        with self._connect() as conn:
            conn.executemany(
                "INSERT INTO intake_reminders (intake_id, provider, handle) VALUES (?, ?, ?)",
                [(intake_id, provider, handle) for provider, handle in handles.items()],
            )

    def pop_reminder_handles(self, intake_id: int) -> list[tuple[str, str]]:
        """Return and forget every (provider, handle) recorded for an intake."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT provider, handle FROM intake_reminders WHERE intake_id = ? ORDER BY id",
                (intake_id,),
            ).fetchall()
            conn.execute("DELETE FROM intake_reminders WHERE intake_id = ?", (intake_id,))
        return [(r["provider"], r["handle"]) for r in rows]
