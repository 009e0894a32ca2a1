"""Tests for vigil.data.db — SlotStore (SQLite storage)."""

from datetime import date, datetime, timezone
from unittest.mock import patch

import pytest

from vigil.config import settings
from vigil.data.models import ACTIVE, ATTENDED, MISSED, RELEASED, SKIPPED, AttendanceRecord, MeetingSession


class TestOwnersAndClaims:
    def test_owner_email_lower_cased(self, store):
        owner = store.add_owner("u1", "  Bob@Example.COM ", chat_handle="42")
        assert owner.email == "bob@example.com"
        assert store.get_owner("u1").chat_handle == "42"

    def test_get_owner_missing(self, store):
        assert store.get_owner("nobody") is None

    def test_claim_takes_window_from_pool(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        assert slot.time_range == "14:00–14:30"
        assert slot.status == ACTIVE
        assert slot.owner_email == "alice@example.com"
        assert "14:00–14:30" not in seeded_store.list_available_windows()

    def test_claim_reminder_lead_follows_setting(self, seeded_store):
        seeded_store.add_owner("u2", "bob@example.com")
        with patch.object(settings, "DEFAULT_REMINDER_MINUTES", 45):
            slot = seeded_store.claim_slot("u2", "06:00–06:30")

        assert slot.reminder_minutes == 45
        assert seeded_store.get_slot("u2").reminder_minutes == 45

    def test_claim_with_reminders_off(self, seeded_store):
        seeded_store.add_owner("u2", "bob@example.com")
        seeded_store.claim_slot("u2", "06:00–06:30", reminder_minutes=None)
        assert seeded_store.get_slot("u2").reminder_minutes is None

    def test_claim_unavailable_window(self, seeded_store):
        seeded_store.add_owner("u2", "bob@example.com")
        with pytest.raises(ValueError):
            seeded_store.claim_slot("u2", "14:00–14:30")

    def test_claim_second_slot_rejected(self, seeded_store):
        with pytest.raises(ValueError):
            seeded_store.claim_slot("u1", "06:00–06:30")

    def test_claim_unknown_owner(self, store):
        store.add_available_window("09:00–09:30")
        with pytest.raises(ValueError):
            store.claim_slot("ghost", "09:00–09:30")

    def test_change_slot_time_swaps_pool(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        seeded_store.update_slot_counters(slot.id, 0, missed_count=2)

        moved = seeded_store.change_slot_time("u1", "06:00–06:30")

        assert moved.time_range == "06:00–06:30"
        stored = seeded_store.get_slot_by_id(slot.id)
        assert stored.time_range == "06:00–06:30"
        assert stored.missed_count == 0
        windows = seeded_store.list_available_windows()
        assert "14:00–14:30" in windows
        assert "06:00–06:30" not in windows

    def test_change_to_taken_window_leaves_slot_unchanged(self, seeded_store):
        seeded_store.add_owner("u2", "bob@example.com")
        seeded_store.claim_slot("u2", "06:00–06:30")
        with pytest.raises(ValueError):
            seeded_store.change_slot_time("u1", "06:00–06:30")
        assert seeded_store.get_slot("u1").time_range == "14:00–14:30"


class TestSkipWindow:
    def test_skip_moves_slot_out_of_active_list(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        seeded_store.set_skip_window(slot.id, date(2025, 3, 1), date(2025, 3, 5))

        assert seeded_store.list_active_slots() == []
        skipped = seeded_store.list_skipped_slots()
        assert len(skipped) == 1
        assert skipped[0].status == SKIPPED
        assert skipped[0].is_skipping(date(2025, 3, 3))
        assert not skipped[0].is_skipping(date(2025, 3, 6))

    def test_skip_window_must_be_ordered(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        with pytest.raises(ValueError):
            seeded_store.set_skip_window(slot.id, date(2025, 3, 5), date(2025, 3, 1))


class TestCounterCompareAndSwap:
    def test_update_applies_when_count_matches(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        assert seeded_store.update_slot_counters(slot.id, 0, missed_count=1) is True
        assert seeded_store.get_slot_by_id(slot.id).missed_count == 1

    def test_stale_expected_count_rejected(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        seeded_store.update_slot_counters(slot.id, 0, missed_count=1)
        assert seeded_store.update_slot_counters(slot.id, 0, missed_count=1) is False
        assert seeded_store.get_slot_by_id(slot.id).missed_count == 1

    def test_last_attended_at_written(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        at = datetime(2025, 3, 1, 14, 5, tzinfo=timezone.utc)
        seeded_store.update_slot_counters(slot.id, 0, missed_count=0, last_attended_at=at)
        assert seeded_store.get_slot_by_id(slot.id).last_attended_at == at

    def test_release_clears_owner_and_returns_window(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        assert seeded_store.update_slot_counters(
            slot.id, 0, missed_count=0, status=RELEASED,
        ) is True

        released = seeded_store.get_slot_by_id(slot.id)
        assert released.status == RELEASED
        assert released.owner_id is None
        assert released.owner_email is None
        assert seeded_store.get_slot("u1") is None
        assert "14:00–14:30" in seeded_store.list_available_windows()

    def test_released_slot_cannot_be_updated(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        seeded_store.update_slot_counters(slot.id, 0, missed_count=0, status=RELEASED)
        assert seeded_store.update_slot_counters(slot.id, 0, missed_count=1) is False


class TestAttendance:
    def _record(self, outcome, day=1, source=None):
        return AttendanceRecord(
            owner_id="u1", slot_id=1, date=date(2025, 3, day),
            outcome=outcome, source_meeting_id=source,
        )

    def test_upsert_then_read(self, seeded_store):
        stored = seeded_store.upsert_attendance(self._record(ATTENDED, source="s1"))
        assert stored.outcome == ATTENDED
        assert seeded_store.get_attendance("u1", date(2025, 3, 1)).source_meeting_id == "s1"

    def test_one_row_per_owner_and_date(self, seeded_store):
        seeded_store.upsert_attendance(self._record(ATTENDED, source="s1"))
        seeded_store.upsert_attendance(self._record(ATTENDED, source="s2"))
        rows = seeded_store.list_attendance("u1", date(2025, 3, 1), date(2025, 3, 1))
        assert len(rows) == 1

    def test_missed_upgraded_to_attended(self, seeded_store):
        seeded_store.upsert_attendance(self._record(MISSED))
        stored = seeded_store.upsert_attendance(self._record(ATTENDED, source="late"))
        assert stored.outcome == ATTENDED

    def test_attended_never_downgraded(self, seeded_store):
        seeded_store.upsert_attendance(self._record(ATTENDED, source="s1"))
        stored = seeded_store.upsert_attendance(self._record(MISSED))
        assert stored.outcome == ATTENDED
        assert stored.source_meeting_id == "s1"

    def test_insert_only_creates_once(self, seeded_store):
        assert seeded_store.insert_attendance(self._record(MISSED)) is True
        assert seeded_store.insert_attendance(self._record(MISSED)) is False

    def test_insert_does_not_touch_attended_row(self, seeded_store):
        seeded_store.upsert_attendance(self._record(ATTENDED))
        assert seeded_store.insert_attendance(self._record(MISSED)) is False
        assert seeded_store.get_attendance("u1", date(2025, 3, 1)).outcome == ATTENDED

    def test_summary_counts_and_streak(self, seeded_store):
        seeded_store.upsert_attendance(self._record(MISSED, day=1))
        seeded_store.upsert_attendance(self._record(ATTENDED, day=2))
        seeded_store.upsert_attendance(self._record(ATTENDED, day=3))

        summary = seeded_store.attendance_summary("u1", date(2025, 3, 1), date(2025, 3, 7))
        assert summary.total == 3
        assert summary.attended == 2
        assert summary.missed == 1
        assert summary.streak == 2
        assert summary.rate == 67


class TestSessionsSchedulesPreferences:
    def test_session_processed_marker(self, store):
        session = MeetingSession(
            session_id="abc==", meeting_id="123",
            start_time=datetime(2025, 3, 1, 14, 0, tzinfo=timezone.utc),
        )
        assert store.is_session_processed("abc==") is False
        store.mark_session_processed(session)
        store.mark_session_processed(session)
        assert store.is_session_processed("abc==") is True

    def test_schedule_defaults_to_every_day(self, store):
        assert store.list_owner_schedule("u1") is None

    def test_schedule_weekday_names(self, store):
        store.set_owner_schedule("u1", ["Monday", "friday"])
        assert store.list_owner_schedule("u1") == {0, 4}

    def test_schedule_rejects_unknown_day(self, store):
        with pytest.raises(ValueError):
            store.set_owner_schedule("u1", ["someday"])

    def test_quiet_hours_default_disabled(self, store):
        prefs = store.get_quiet_hours("u1")
        assert prefs.enabled is False

    def test_quiet_hours_round_trip(self, store):
        store.set_quiet_hours("u1", True, "21:00", "05:00")
        prefs = store.get_quiet_hours("u1")
        assert (prefs.enabled, prefs.start, prefs.end) == (True, "21:00", "05:00")

    def test_flag_for_review(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        seeded_store.flag_slot_for_review(slot.id, "bad window")
        flagged = seeded_store.list_flagged_slots()
        assert [(s.id, reason) for s, reason in flagged] == [(slot.id, "bad window")]
