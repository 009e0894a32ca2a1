"""
Vigil — Slot Store.

SQLite-backed storage for owners, prayer slots, the available-window pool,
attendance rows, processed meeting sessions and reminder preferences.

Core modules only see row-level upserts and conditional updates: the
attendance upsert on (owner_id, date) is the idempotency boundary, and
slot counters change through a compare-and-swap on missed_count.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterable

from vigil.data.models import (
    ACTIVE,
    ATTENDED,
    RELEASED,
    SKIPPED,
    AttendanceRecord,
    AttendanceSummary,
    MeetingSession,
    Owner,
    PrayerSlot,
    QuietHours,
)

logger = logging.getLogger(__name__)

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# claim_slot default; None is a real value there (reminders off)
_DEFAULT_LEAD = object()


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def _d(raw: str | None) -> date | None:
    return date.fromisoformat(raw) if raw else None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SlotStore:
    """SQLite-backed slot store. Implements SlotStorePort and PreferenceSource."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from vigil.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create all tables if they don't exist."""
        with self._connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS owners (
                    owner_id      TEXT PRIMARY KEY,
                    email         TEXT NOT NULL,
                    display_name  TEXT NOT NULL DEFAULT '',
                    chat_handle   TEXT
                );

                CREATE TABLE IF NOT EXISTS prayer_slots (
                    id                INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id          TEXT,
                    owner_email       TEXT,
                    time_range        TEXT    NOT NULL,
                    status            TEXT    NOT NULL DEFAULT 'active',
                    missed_count      INTEGER NOT NULL DEFAULT 0,
                    last_attended_at  TEXT,
                    skip_start        TEXT,
                    skip_end          TEXT,
                    reminder_minutes  INTEGER,
                    needs_review      INTEGER NOT NULL DEFAULT 0,
                    review_reason     TEXT,
                    updated_at        TEXT
                );

                CREATE TABLE IF NOT EXISTS available_slots (
                    time_range    TEXT PRIMARY KEY,
                    is_available  INTEGER NOT NULL DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS attendance_log (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id           TEXT NOT NULL,
                    slot_id            INTEGER,
                    date               TEXT NOT NULL,
                    outcome            TEXT NOT NULL CHECK (outcome IN ('attended', 'missed')),
                    join_time          TEXT,
                    leave_time         TEXT,
                    source_meeting_id  TEXT,
                    updated_at         TEXT,
                    UNIQUE (owner_id, date)
                );

                CREATE TABLE IF NOT EXISTS meeting_sessions (
                    session_id         TEXT PRIMARY KEY,
                    meeting_id         TEXT NOT NULL,
                    topic              TEXT,
                    start_time         TEXT,
                    end_time           TEXT,
                    participant_count  INTEGER NOT NULL DEFAULT 0,
                    processed          INTEGER NOT NULL DEFAULT 0,
                    processed_at       TEXT
                );

                CREATE TABLE IF NOT EXISTS owner_schedules (
                    owner_id     TEXT PRIMARY KEY,
                    active_days  TEXT NOT NULL DEFAULT ''
                );

                CREATE TABLE IF NOT EXISTS reminder_preferences (
                    owner_id       TEXT PRIMARY KEY,
                    quiet_enabled  INTEGER NOT NULL DEFAULT 0,
                    quiet_start    TEXT NOT NULL DEFAULT '22:00',
                    quiet_end      TEXT NOT NULL DEFAULT '06:00'
                );
            """)
        logger.debug("Slot store initialized at %s", self._db_path)

    @staticmethod
    def _row_to_slot(row: sqlite3.Row) -> PrayerSlot:
        return PrayerSlot(
            id=row["id"],
            owner_id=row["owner_id"],
            owner_email=row["owner_email"],
            time_range=row["time_range"],
            status=row["status"],
            missed_count=row["missed_count"],
            last_attended_at=_dt(row["last_attended_at"]),
            skip_start=_d(row["skip_start"]),
            skip_end=_d(row["skip_end"]),
            reminder_minutes=row["reminder_minutes"],
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> AttendanceRecord:
        return AttendanceRecord(
            owner_id=row["owner_id"],
            slot_id=row["slot_id"],
            date=date.fromisoformat(row["date"]),
            outcome=row["outcome"],
            join_time=_dt(row["join_time"]),
            leave_time=_dt(row["leave_time"]),
            source_meeting_id=row["source_meeting_id"],
        )

    # ------------------------------------------------------------------
    # Owners
    # ------------------------------------------------------------------

    def add_owner(
        self,
        owner_id: str,
        email: str,
        display_name: str = "",
        chat_handle: str | None = None,
    ) -> Owner:
        """Insert or replace an owner. E-mail is stored lower-cased."""
        owner = Owner(
            owner_id=owner_id,
            email=email.strip().lower(),
            display_name=display_name.strip(),
            chat_handle=chat_handle,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO owners (owner_id, email, display_name, chat_handle)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (owner_id) DO UPDATE SET
                    email = excluded.email,
                    display_name = excluded.display_name,
                    chat_handle = excluded.chat_handle
                """,
                (owner.owner_id, owner.email, owner.display_name, owner.chat_handle),
            )
        logger.info("Owner saved: %s <%s>", owner_id, owner.email)
        return owner

    def get_owner(self, owner_id: str) -> Owner | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM owners WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        if row is None:
            return None
        return Owner(
            owner_id=row["owner_id"],
            email=row["email"],
            display_name=row["display_name"],
            chat_handle=row["chat_handle"],
        )

    # ------------------------------------------------------------------
    # Available-window pool and slot claims
    # ------------------------------------------------------------------

    def add_available_window(self, time_range: str) -> None:
        """Seed a free time window into the pool."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO available_slots (time_range, is_available) VALUES (?, 1)",
                (time_range,),
            )

    def list_available_windows(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT time_range FROM available_slots WHERE is_available = 1 ORDER BY time_range"
            ).fetchall()
        return [r["time_range"] for r in rows]

    def claim_slot(
        self, owner_id: str, time_range: str, reminder_minutes: int | None = _DEFAULT_LEAD,
    ) -> PrayerSlot:
        """Give a free window to an owner. Raises ValueError if unavailable.

        reminder_minutes defaults to DEFAULT_REMINDER_MINUTES; None turns
        slot reminders off.
        """
        if reminder_minutes is _DEFAULT_LEAD:
            from vigil.config import settings
            reminder_minutes = settings.DEFAULT_REMINDER_MINUTES
        owner = self.get_owner(owner_id)
        if owner is None:
            raise ValueError(f"Owner {owner_id} not found")
        if self.get_slot(owner_id) is not None:
            raise ValueError(f"Owner {owner_id} already holds a slot")

        with self._connect() as conn:
            taken = conn.execute(
                "UPDATE available_slots SET is_available = 0 "
                "WHERE time_range = ? AND is_available = 1",
                (time_range,),
            )
            if taken.rowcount == 0:
                raise ValueError(f"Time window {time_range} is not available")
            cursor = conn.execute(
                """
                INSERT INTO prayer_slots
                    (owner_id, owner_email, time_range, status, missed_count,
                     reminder_minutes, updated_at)
                VALUES (?, ?, ?, 'active', 0, ?, ?)
                """,
                (owner_id, owner.email, time_range, reminder_minutes, _now()),
            )
            slot_id = cursor.lastrowid

        logger.info("Slot #%d %s claimed by %s", slot_id, time_range, owner_id)
        return PrayerSlot(
            id=slot_id,
            owner_id=owner_id,
            owner_email=owner.email,
            time_range=time_range,
            reminder_minutes=reminder_minutes,
        )

    def change_slot_time(self, owner_id: str, new_range: str) -> PrayerSlot:
        """Move an owner's slot to another free window in one transaction."""
        slot = self.get_slot(owner_id)
        if slot is None:
            raise ValueError(f"Owner {owner_id} holds no slot")

        with self._connect() as conn:
            taken = conn.execute(
                "UPDATE available_slots SET is_available = 0 "
                "WHERE time_range = ? AND is_available = 1",
                (new_range,),
            )
            if taken.rowcount == 0:
                raise ValueError(f"Time window {new_range} is not available")
            conn.execute(
                """
                INSERT INTO available_slots (time_range, is_available) VALUES (?, 1)
                ON CONFLICT (time_range) DO UPDATE SET is_available = 1
                """,
                (slot.time_range,),
            )
            conn.execute(
                "UPDATE prayer_slots SET time_range = ?, missed_count = 0, "
                "status = 'active', updated_at = ? WHERE id = ?",
                (new_range, _now(), slot.id),
            )

        logger.info("Slot #%d moved %s → %s", slot.id, slot.time_range, new_range)
        slot.time_range = new_range
        slot.missed_count = 0
        slot.status = ACTIVE
        return slot

    def set_skip_window(self, slot_id: int, start: date, end: date) -> None:
        """Put a slot into the owner-initiated skipped state for [start, end]."""
        if end < start:
            raise ValueError("Skip window ends before it starts")
        with self._connect() as conn:
            conn.execute(
                "UPDATE prayer_slots SET status = ?, skip_start = ?, skip_end = ?, "
                "updated_at = ? WHERE id = ? AND status != ?",
                (SKIPPED, start.isoformat(), end.isoformat(), _now(), slot_id, RELEASED),
            )
        logger.info("Slot #%d skipping %s..%s", slot_id, start, end)

    # ------------------------------------------------------------------
    # Slot reads
    # ------------------------------------------------------------------

    def list_active_slots(self) -> list[PrayerSlot]:
        """Active slots that currently have an owner."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM prayer_slots WHERE status = ? AND owner_id IS NOT NULL ORDER BY id",
                (ACTIVE,),
            ).fetchall()
        return [self._row_to_slot(r) for r in rows]

    def list_skipped_slots(self) -> list[PrayerSlot]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM prayer_slots WHERE status = ? ORDER BY id", (SKIPPED,),
            ).fetchall()
        return [self._row_to_slot(r) for r in rows]

    def get_slot(self, owner_id: str) -> PrayerSlot | None:
        """The owner's current (non-released) slot."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM prayer_slots WHERE owner_id = ? AND status != ? "
                "ORDER BY id DESC LIMIT 1",
                (owner_id, RELEASED),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_slot(row)

    def get_slot_by_id(self, slot_id: int) -> PrayerSlot | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM prayer_slots WHERE id = ?", (slot_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_slot(row)

    # ------------------------------------------------------------------
    # Counter updates (compare-and-swap on missed_count)
    # ------------------------------------------------------------------

    def update_slot_counters(
        self,
        slot_id: int,
        expected_missed_count: int,
        *,
        missed_count: int,
        status: str | None = None,
        last_attended_at: datetime | None = None,
    ) -> bool:
        """Conditionally update a slot's counters.

        Applies only if the stored missed_count still equals
        expected_missed_count and the slot is not released. Moving to
        RELEASED also clears the owner and returns the window to the pool
        in the same transaction.

        Returns True if the update was applied, False on a stale read.
        """
        assignments = ["missed_count = ?", "updated_at = ?"]
        params: list = [missed_count, _now()]
        if status is not None:
            assignments.append("status = ?")
            params.append(status)
        if last_attended_at is not None:
            assignments.append("last_attended_at = ?")
            params.append(last_attended_at.isoformat())
        if status == RELEASED:
            assignments.extend(["owner_id = NULL", "owner_email = NULL"])

        query = (
            f"UPDATE prayer_slots SET {', '.join(assignments)} "
            "WHERE id = ? AND missed_count = ? AND status != ?"
        )
        params.extend([slot_id, expected_missed_count, RELEASED])

        with self._connect() as conn:
            cursor = conn.execute(query, params)
            applied = cursor.rowcount == 1
            if applied and status == RELEASED:
                conn.execute(
                    """
                    INSERT INTO available_slots (time_range, is_available)
                    SELECT time_range, 1 FROM prayer_slots WHERE id = ?
                    ON CONFLICT (time_range) DO UPDATE SET is_available = 1
                    """,
                    (slot_id,),
                )

        if not applied:
            logger.debug(
                "Counter CAS missed for slot #%d (expected missed_count=%d)",
                slot_id, expected_missed_count,
            )
        return applied

    def flag_slot_for_review(self, slot_id: int, reason: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE prayer_slots SET needs_review = 1, review_reason = ? WHERE id = ?",
                (reason, slot_id),
            )

    def list_flagged_slots(self) -> list[tuple[PrayerSlot, str]]:
        """Slots an operator should look at, with the reason."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM prayer_slots WHERE needs_review = 1 ORDER BY id"
            ).fetchall()
        return [(self._row_to_slot(r), r["review_reason"] or "") for r in rows]

    # ------------------------------------------------------------------
    # Attendance
    # ------------------------------------------------------------------

    def get_attendance(self, owner_id: str, on_date: date) -> AttendanceRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM attendance_log WHERE owner_id = ? AND date = ?",
                (owner_id, on_date.isoformat()),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def upsert_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        """Write an attendance row for (owner_id, date) and return the stored row.

        An existing 'attended' row is never overwritten, so the stored
        outcome can move missed → attended but not back.
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO attendance_log
                    (owner_id, slot_id, date, outcome, join_time, leave_time,
                     source_meeting_id, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (owner_id, date) DO UPDATE SET
                    slot_id = excluded.slot_id,
                    outcome = excluded.outcome,
                    join_time = excluded.join_time,
                    leave_time = excluded.leave_time,
                    source_meeting_id = excluded.source_meeting_id,
                    updated_at = excluded.updated_at
                WHERE attendance_log.outcome != ?
                """,
                (
                    record.owner_id,
                    record.slot_id,
                    record.date.isoformat(),
                    record.outcome,
                    _iso(record.join_time),
                    _iso(record.leave_time),
                    record.source_meeting_id,
                    _now(),
                    ATTENDED,
                ),
            )
            row = conn.execute(
                "SELECT * FROM attendance_log WHERE owner_id = ? AND date = ?",
                (record.owner_id, record.date.isoformat()),
            ).fetchone()
        return self._row_to_record(row)

    def insert_attendance(self, record: AttendanceRecord) -> bool:
        """Write an attendance row only if (owner_id, date) has none yet.

        Returns True if this call created the row. Concurrent sweeps use
        this to make sure exactly one of them counts a day as missed.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO attendance_log
                    (owner_id, slot_id, date, outcome, join_time, leave_time,
                     source_meeting_id, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (owner_id, date) DO NOTHING
                """,
                (
                    record.owner_id,
                    record.slot_id,
                    record.date.isoformat(),
                    record.outcome,
                    _iso(record.join_time),
                    _iso(record.leave_time),
                    record.source_meeting_id,
                    _now(),
                ),
            )
        return cursor.rowcount == 1

    def list_attendance(
        self, owner_id: str, since: date, until: date,
    ) -> list[AttendanceRecord]:
        """Attendance rows for an owner in [since, until], newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM attendance_log WHERE owner_id = ? AND date BETWEEN ? AND ? "
                "ORDER BY date DESC",
                (owner_id, since.isoformat(), until.isoformat()),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def attendance_summary(
        self, owner_id: str, since: date, until: date,
    ) -> AttendanceSummary:
        records = self.list_attendance(owner_id, since, until)
        summary = AttendanceSummary(total=len(records))
        summary.attended = sum(1 for r in records if r.outcome == ATTENDED)
        summary.missed = summary.total - summary.attended
        for record in records:
            if record.outcome != ATTENDED:
                break
            summary.streak += 1
        return summary

    # ------------------------------------------------------------------
    # Meeting sessions
    # ------------------------------------------------------------------

    def is_session_processed(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT processed FROM meeting_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return bool(row and row["processed"])

    def mark_session_processed(self, session: MeetingSession) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO meeting_sessions
                    (session_id, meeting_id, topic, start_time, end_time,
                     participant_count, processed, processed_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                ON CONFLICT (session_id) DO UPDATE SET
                    participant_count = excluded.participant_count,
                    processed = 1,
                    processed_at = excluded.processed_at
                """,
                (
                    session.session_id,
                    session.meeting_id,
                    session.topic,
                    _iso(session.start_time),
                    _iso(session.end_time),
                    len(session.participants),
                    _now(),
                ),
            )
        logger.info(
            "Session %s marked processed (%d participants)",
            session.session_id, len(session.participants),
        )

    # ------------------------------------------------------------------
    # Schedules and preferences
    # ------------------------------------------------------------------

    def set_owner_schedule(self, owner_id: str, days: Iterable[str]) -> None:
        """Store the weekdays (names like "monday") an owner is expected to pray."""
        normalized = []
        for day in days:
            name = day.strip().lower()
            if name not in _WEEKDAYS:
                raise ValueError(f"Unknown weekday {day!r}")
            normalized.append(name)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO owner_schedules (owner_id, active_days) VALUES (?, ?)
                ON CONFLICT (owner_id) DO UPDATE SET active_days = excluded.active_days
                """,
                (owner_id, ",".join(normalized)),
            )

    def list_owner_schedule(self, owner_id: str) -> set[int] | None:
        """Scheduled weekdays (Monday=0) or None meaning every day."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT active_days FROM owner_schedules WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        if row is None or not row["active_days"]:
            return None
        return {
            _WEEKDAYS.index(name)
            for name in row["active_days"].split(",")
            if name in _WEEKDAYS
        } or None

    def set_quiet_hours(
        self, owner_id: str, enabled: bool, start: str = "22:00", end: str = "06:00",
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO reminder_preferences (owner_id, quiet_enabled, quiet_start, quiet_end)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (owner_id) DO UPDATE SET
                    quiet_enabled = excluded.quiet_enabled,
                    quiet_start = excluded.quiet_start,
                    quiet_end = excluded.quiet_end
                """,
                (owner_id, int(enabled), start, end),
            )

    def get_quiet_hours(self, owner_id: str) -> QuietHours:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reminder_preferences WHERE owner_id = ?", (owner_id,),
            ).fetchone()
        if row is None:
            return QuietHours()
        return QuietHours(
            enabled=bool(row["quiet_enabled"]),
            start=row["quiet_start"],
            end=row["quiet_end"],
        )
