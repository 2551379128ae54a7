"""
Health Reminder Bot — Core Databases.

Reminder gating state, health readings, per-user notification preferences
and Web Push subscriptions, all persisted in SQLite.

Timestamps are stored as UTC ISO-8601 strings with a fixed microsecond
precision so that lexical order in SQL matches chronological order.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path

from healthbot.data.models import (
    DEFAULT_REMINDER_HOUR,
    BloodPressureReading,
    Domain,
    PushSubscription,
    ReminderState,
    WeightLog,
)

logger = logging.getLogger(__name__)

# Exponential moving average smoothing for the weight trend line
WEIGHT_TREND_ALPHA = 0.1


def to_db_ts(value: datetime | None) -> str | None:
    """Serialize an aware datetime as a sortable UTC string. Naive = UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_db_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def dump_handles(handles: dict[str, str] | None) -> str | None:
    return json.dumps(handles) if handles else None


def load_handles(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed notification handles: %r", raw)
        return {}
    return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}


class SQLiteStore:
    """Shared connection handling for every table group."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from healthbot.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError


class ReminderStateDB(SQLiteStore):
    """Reminder gating state per (user, domain), plus scheduler marks.

    A mark is a named "last done at" timestamp used to make periodic jobs
    fire at most once per window (e.g. the daily low-stock check).
    """

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reminder_state (
                    user_id                   INTEGER NOT NULL,
                    domain                    TEXT    NOT NULL,
                    enabled                   INTEGER NOT NULL DEFAULT 1,
                    snoozed_until             TEXT,
                    dont_remind_until         TEXT,
                    last_notification_sent_at TEXT,
                    last_notification_handles TEXT,
                    preferred_reminder_hour   INTEGER NOT NULL,
                    updated_at                TEXT    NOT NULL,
                    PRIMARY KEY (user_id, domain)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduler_marks (
                    user_id    INTEGER NOT NULL,
                    name       TEXT    NOT NULL,
                    marked_at  TEXT    NOT NULL,
                    PRIMARY KEY (user_id, name)
                )
            """)
        logger.debug("Reminder state tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> ReminderState:
        return ReminderState(
            user_id=row["user_id"],
            domain=Domain(row["domain"]),
            enabled=bool(row["enabled"]),
            snoozed_until=from_db_ts(row["snoozed_until"]),
            dont_remind_until=from_db_ts(row["dont_remind_until"]),
            last_notification_sent_at=from_db_ts(row["last_notification_sent_at"]),
            last_notification_handles=load_handles(row["last_notification_handles"]),
            preferred_reminder_hour=row["preferred_reminder_hour"],
        )

    def _ensure_row(self, conn: sqlite3.Connection, user_id: int, domain: Domain) -> None:
        """Create the state row lazily with the domain's defaults."""
        conn.execute(
            """
            INSERT OR IGNORE INTO reminder_state
                (user_id, domain, enabled, preferred_reminder_hour, updated_at)
            VALUES (?, ?, 1, ?, ?)
            """,
            (
                user_id, domain.value,
                DEFAULT_REMINDER_HOUR.get(domain, 20),
                to_db_ts(datetime.now(timezone.utc)),
            ),
        )

    def _update(self, user_id: int, domain: Domain, **columns: object) -> ReminderState:
        assignments = ", ".join(f"{name} = ?" for name in columns)
        params = [*columns.values(), to_db_ts(datetime.now(timezone.utc)), user_id, domain.value]
        with self._connect() as conn:
            self._ensure_row(conn, user_id, domain)
            conn.execute(
                f"UPDATE reminder_state SET {assignments}, updated_at = ? "
                "WHERE user_id = ? AND domain = ?",
                params,
            )
            row = conn.execute(
                "SELECT * FROM reminder_state WHERE user_id = ? AND domain = ?",
                (user_id, domain.value),
            ).fetchone()
        return self._row_to_state(row)

    def get_state(self, user_id: int, domain: Domain) -> ReminderState:
        with self._connect() as conn:
            self._ensure_row(conn, user_id, domain)
            row = conn.execute(
                "SELECT * FROM reminder_state WHERE user_id = ? AND domain = ?",
                (user_id, domain.value),
            ).fetchone()
        return self._row_to_state(row)

    def set_enabled(self, user_id: int, domain: Domain, enabled: bool) -> ReminderState:
        return self._update(user_id, domain, enabled=int(enabled))

    def set_snoozed_until(
        self, user_id: int, domain: Domain, until: datetime | None
    ) -> ReminderState:
        return self._update(user_id, domain, snoozed_until=to_db_ts(until))

    def set_dont_remind_until(
        self, user_id: int, domain: Domain, until: datetime | None
    ) -> ReminderState:
        return self._update(user_id, domain, dont_remind_until=to_db_ts(until))

    def set_preferred_hour(self, user_id: int, domain: Domain, hour: int) -> ReminderState:
        return self._update(user_id, domain, preferred_reminder_hour=hour)

    def record_notification_sent(
        self,
        user_id: int,
        domain: Domain,
        sent_at: datetime,
        handles: dict[str, str] | None = None,
    ) -> ReminderState:
        return self._update(
            user_id,
            domain,
            last_notification_sent_at=to_db_ts(sent_at),
            last_notification_handles=dump_handles(handles),
        )

    def clear_notification_handles(self, user_id: int, domain: Domain) -> ReminderState:
        return self._update(user_id, domain, last_notification_handles=None)

    # --- Scheduler marks ---

    def get_mark(self, user_id: int, name: str) -> datetime | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT marked_at FROM scheduler_marks WHERE user_id = ? AND name = ?",
                (user_id, name),
            ).fetchone()
        return from_db_ts(row["marked_at"]) if row else None

    def set_mark(self, user_id: int, name: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scheduler_marks (user_id, name, marked_at) VALUES (?, ?, ?)
                ON CONFLICT(user_id, name) DO UPDATE SET marked_at = excluded.marked_at
                """,
                (user_id, name, to_db_ts(at)),
            )


class ReadingDB(SQLiteStore):
    """Blood-pressure readings and weight logs.

    Readings are append-only; only the annotation fields (ignore_calc,
    notes, tag) can change after insert.
    """

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS blood_pressure_readings (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id      INTEGER NOT NULL,
                    measured_at  TEXT    NOT NULL,
                    systolic     INTEGER NOT NULL,
                    diastolic    INTEGER NOT NULL,
                    pulse        INTEGER,
                    category     TEXT    NOT NULL DEFAULT '',
                    ignore_calc  INTEGER NOT NULL DEFAULT 0,
                    notes        TEXT    NOT NULL DEFAULT '',
                    tag          TEXT    NOT NULL DEFAULT ''
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bp_user_time "
                "ON blood_pressure_readings(user_id, measured_at)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS weight_logs (
                    id            INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id       INTEGER NOT NULL,
                    measured_at   TEXT    NOT NULL,
                    weight        REAL    NOT NULL,
                    weight_trend  REAL,
                    body_fat      REAL,
                    notes         TEXT    NOT NULL DEFAULT ''
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_weight_user_time "
                "ON weight_logs(user_id, measured_at)"
            )
            # Migrate DBs created before annotation tags existed
            existing_cols = {
                row[1]
                for row in conn.execute("PRAGMA table_info(blood_pressure_readings)").fetchall()
            }
            if "tag" not in existing_cols:
                conn.execute(
                    "ALTER TABLE blood_pressure_readings ADD COLUMN tag TEXT NOT NULL DEFAULT ''"
                )
        logger.debug("Reading tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_bp(row: sqlite3.Row) -> BloodPressureReading:
        return BloodPressureReading(
            id=row["id"],
            user_id=row["user_id"],
            measured_at=from_db_ts(row["measured_at"]),
            systolic=row["systolic"],
            diastolic=row["diastolic"],
            pulse=row["pulse"],
            category=row["category"],
            ignore_calc=bool(row["ignore_calc"]),
            notes=row["notes"],
            tag=row["tag"],
        )

    @staticmethod
    def _row_to_weight(row: sqlite3.Row) -> WeightLog:
        return WeightLog(
            id=row["id"],
            user_id=row["user_id"],
            measured_at=from_db_ts(row["measured_at"]),
            weight=row["weight"],
            weight_trend=row["weight_trend"],
            body_fat=row["body_fat"],
            notes=row["notes"],
        )

    # --- Blood pressure ---

    def add_bp_reading(
        self,
        user_id: int,
        measured_at: datetime,
        systolic: int,
        diastolic: int,
        pulse: int | None = None,
        notes: str = "",
        tag: str = "",
        ignore_calc: bool = False,
    ) -> BloodPressureReading:
        """Insert a reading; the clinical category is derived here."""
        from healthbot.core.blood_pressure import categorize

        category = categorize(systolic, diastolic).value
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO blood_pressure_readings
                    (user_id, measured_at, systolic, diastolic, pulse,
                     category, ignore_calc, notes, tag)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, to_db_ts(measured_at), systolic, diastolic, pulse,
                    category, int(ignore_calc), notes, tag,
                ),
            )
            reading_id = cursor.lastrowid

        reading = BloodPressureReading(
            id=reading_id,
            user_id=user_id,
            measured_at=from_db_ts(to_db_ts(measured_at)),
            systolic=systolic,
            diastolic=diastolic,
            pulse=pulse,
            category=category,
            ignore_calc=ignore_calc,
            notes=notes,
            tag=tag,
        )
        logger.info(
            "Added BP reading %d/%d (%s) for user %d", systolic, diastolic, category, user_id
        )
        return reading

    def list_bp_readings(
        self,
        user_id: int,
        since: datetime | None = None,
        include_ignored: bool = True,
    ) -> list[BloodPressureReading]:
        """Readings in ascending time order; ties keep insertion order."""
        query = "SELECT * FROM blood_pressure_readings WHERE user_id = ?"
        params: list[object] = [user_id]
        if since is not None:
            query += " AND measured_at >= ?"
            params.append(to_db_ts(since))
        if not include_ignored:
            query += " AND ignore_calc = 0"
        query += " ORDER BY measured_at ASC, id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_bp(r) for r in rows]

    def get_last_bp_reading(self, user_id: int) -> BloodPressureReading | None:
        """Most recent reading, regardless of its ignore_calc flag."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM blood_pressure_readings WHERE user_id = ?
                ORDER BY measured_at DESC, id DESC LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_bp(row) if row else None

    def annotate_bp_reading(
        self,
        reading_id: int,
        user_id: int,
        *,
        ignore_calc: bool | None = None,
        notes: str | None = None,
        tag: str | None = None,
    ) -> BloodPressureReading | None:
        columns: dict[str, object] = {}
        if ignore_calc is not None:
            columns["ignore_calc"] = int(ignore_calc)
        if notes is not None:
            columns["notes"] = notes
        if tag is not None:
            columns["tag"] = tag

        with self._connect() as conn:
            if columns:
                assignments = ", ".join(f"{name} = ?" for name in columns)
                conn.execute(
                    f"UPDATE blood_pressure_readings SET {assignments} "
                    "WHERE id = ? AND user_id = ?",
                    [*columns.values(), reading_id, user_id],
                )
            row = conn.execute(
                "SELECT * FROM blood_pressure_readings WHERE id = ? AND user_id = ?",
                (reading_id, user_id),
            ).fetchone()
        return self._row_to_bp(row) if row else None

    def delete_bp_reading(self, reading_id: int, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM blood_pressure_readings WHERE id = ? AND user_id = ?",
                (reading_id, user_id),
            )
        return cursor.rowcount > 0

    # --- Weight ---

    def add_weight_log(
        self,
        user_id: int,
        measured_at: datetime,
        weight: float,
        body_fat: float | None = None,
        notes: str = "",
    ) -> WeightLog:
        """Insert a weigh-in and extend the EMA trend from the previous one."""
        previous = self.get_last_weight_log(user_id)
        if previous is None:
            trend = weight
        else:
            base = previous.weight_trend if previous.weight_trend is not None else previous.weight
            trend = base + WEIGHT_TREND_ALPHA * (weight - base)
        trend = round(trend, 2)

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO weight_logs
                    (user_id, measured_at, weight, weight_trend, body_fat, notes)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, to_db_ts(measured_at), weight, trend, body_fat, notes),
            )
            log_id = cursor.lastrowid

        logger.info("Added weight %.1f kg (trend %.2f) for user %d", weight, trend, user_id)
        return WeightLog(
            id=log_id,
            user_id=user_id,
            measured_at=from_db_ts(to_db_ts(measured_at)),
            weight=weight,
            weight_trend=trend,
            body_fat=body_fat,
            notes=notes,
        )

    def list_weight_logs(self, user_id: int, since: datetime | None = None) -> list[WeightLog]:
        query = "SELECT * FROM weight_logs WHERE user_id = ?"
        params: list[object] = [user_id]
        if since is not None:
            query += " AND measured_at >= ?"
            params.append(to_db_ts(since))
        query += " ORDER BY measured_at ASC, id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_weight(r) for r in rows]

    def get_last_weight_log(self, user_id: int) -> WeightLog | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM weight_logs WHERE user_id = ?
                ORDER BY measured_at DESC, id DESC LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_weight(row) if row else None

    def delete_weight_log(self, log_id: int, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM weight_logs WHERE id = ? AND user_id = ?",
                (log_id, user_id),
            )
        return cursor.rowcount > 0


class NotificationSettingsDB(SQLiteStore):
    """Which provider may deliver which notification type to which user.

    No row means enabled: a user who never touched their preferences gets
    every registered provider.
    """

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notification_settings (
                    user_id            INTEGER NOT NULL,
                    provider           TEXT    NOT NULL,
                    notification_type  TEXT    NOT NULL,
                    enabled            INTEGER NOT NULL DEFAULT 1,
                    PRIMARY KEY (user_id, provider, notification_type)
                )
            """)
        logger.debug("Notification settings table initialized at %s", self._db_path)

    def set_enabled(
        self, user_id: int, provider: str, notification_type: str, enabled: bool
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO notification_settings
                    (user_id, provider, notification_type, enabled)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, provider, notification_type)
                DO UPDATE SET enabled = excluded.enabled
                """,
                (user_id, provider, notification_type, int(enabled)),
            )

    def get_enabled_providers(
        self, user_id: int, notification_type: str, candidates: list[str]
    ) -> list[str]:
        """Filter candidate provider names down to those the user has enabled."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT provider, enabled FROM notification_settings
                WHERE user_id = ? AND notification_type = ?
                """,
                (user_id, notification_type),
            ).fetchall()
        explicit = {r["provider"]: bool(r["enabled"]) for r in rows}
        return [name for name in candidates if explicit.get(name, True)]


class PushSubscriptionDB(SQLiteStore):
    """Browser Web Push subscriptions (endpoint + keys) per user."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS push_subscriptions (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id     INTEGER NOT NULL,
                    endpoint    TEXT    NOT NULL UNIQUE,
                    auth        TEXT    NOT NULL,
                    p256dh      TEXT    NOT NULL,
                    enabled     INTEGER NOT NULL DEFAULT 1
                )
            """)
        logger.debug("Push subscriptions table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> PushSubscription:
        return PushSubscription(
            id=row["id"],
            user_id=row["user_id"],
            endpoint=row["endpoint"],
            auth=row["auth"],
            p256dh=row["p256dh"],
            enabled=bool(row["enabled"]),
        )

    def upsert(self, user_id: int, endpoint: str, auth: str, p256dh: str) -> PushSubscription:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO push_subscriptions (user_id, endpoint, auth, p256dh, enabled)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT(endpoint) DO UPDATE SET
                    user_id = excluded.user_id,
                    auth = excluded.auth,
                    p256dh = excluded.p256dh,
                    enabled = 1
                """,
                (user_id, endpoint, auth, p256dh),
            )
            row = conn.execute(
                "SELECT * FROM push_subscriptions WHERE endpoint = ?", (endpoint,)
            ).fetchone()
        return self._row_to_subscription(row)

    def list_active(self, user_id: int) -> list[PushSubscription]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM push_subscriptions WHERE user_id = ? AND enabled = 1 ORDER BY id",
                (user_id,),
            ).fetchall()
        return [self._row_to_subscription(r) for r in rows]

    def disable(self, endpoint: str) -> None:
        """Stop delivering to an endpoint the push service reported as gone."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE push_subscriptions SET enabled = 0 WHERE endpoint = ?", (endpoint,)
            )
        logger.info("Disabled push subscription %s", endpoint)

    def delete(self, endpoint: str, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM push_subscriptions WHERE endpoint = ? AND user_id = ?",
                (endpoint, user_id),
            )
        return cursor.rowcount > 0
