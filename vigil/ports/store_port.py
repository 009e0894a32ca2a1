"""Slot store port — abstract interface for slot, attendance and preference data.

The backing store offers row-level upserts and conditional updates only;
there is no multi-row transaction available to core modules.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Protocol

from vigil.data.models import (
    AttendanceRecord,
    AttendanceSummary,
    MeetingSession,
    Owner,
    PrayerSlot,
    QuietHours,
)


class ConcurrentCounterConflict(Exception):
    """A conditional counter update lost against a concurrent writer twice."""

    def __init__(self, slot_id: int) -> None:
        super().__init__(f"Slot #{slot_id} counter changed concurrently")
        self.slot_id = slot_id


class SlotStorePort(Protocol):
    """Abstract slot store used by the reconciler and lifecycle manager."""

    def list_active_slots(self) -> list[PrayerSlot]: ...

    def list_skipped_slots(self) -> list[PrayerSlot]: ...

    def get_slot(self, owner_id: str) -> PrayerSlot | None: ...

    def get_slot_by_id(self, slot_id: int) -> PrayerSlot | None: ...

    def get_attendance(self, owner_id: str, on_date: date) -> AttendanceRecord | None: ...

    def upsert_attendance(self, record: AttendanceRecord) -> AttendanceRecord: ...

    def insert_attendance(self, record: AttendanceRecord) -> bool: ...

    def update_slot_counters(
        self,
        slot_id: int,
        expected_missed_count: int,
        *,
        missed_count: int,
        status: str | None = None,
        last_attended_at: datetime | None = None,
    ) -> bool: ...

    def list_owner_schedule(self, owner_id: str) -> set[int] | None: ...

    def is_session_processed(self, session_id: str) -> bool: ...

    def mark_session_processed(self, session: MeetingSession) -> None: ...

    def flag_slot_for_review(self, slot_id: int, reason: str) -> None: ...

    def get_owner(self, owner_id: str) -> Owner | None: ...

    def attendance_summary(
        self, owner_id: str, since: date, until: date
    ) -> AttendanceSummary: ...


class PreferenceSource(Protocol):
    """Per-owner reminder preferences."""

    def get_quiet_hours(self, owner_id: str) -> QuietHours: ...
