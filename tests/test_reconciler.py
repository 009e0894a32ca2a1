"""Tests for vigil.core.reconciler — AttendanceReconciler."""

from datetime import date, datetime
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest

from vigil.core.lifecycle import SlotLifecycleManager
from vigil.core.reconciler import AttendanceReconciler
from vigil.data.models import ATTENDED, MISSED, MeetingSession, ParticipantEvent

HARARE = ZoneInfo("Africa/Harare")
DAY = date(2025, 3, 1)  # a Saturday


def _local(day, hour, minute):
    return datetime(2025, 3, day, hour, minute, tzinfo=HARARE)


def _event(identity="alice@example.com", join=None, leave=None, session_id="s1=="):
    return ParticipantEvent(
        identity=identity,
        join_time=join or _local(1, 13, 47),
        leave_time=leave,
        session_id=session_id,
    )


def _build(store, notices=None):
    lifecycle = SlotLifecycleManager(store, notices=notices, release_threshold=5)
    return AttendanceReconciler(store, lifecycle, tolerance_minutes=15, tz=HARARE)


def _set_count(store, owner_id, count):
    slot = store.get_slot(owner_id)
    store.update_slot_counters(slot.id, slot.missed_count, missed_count=count)
    return store.get_slot(owner_id)


@pytest.fixture
def overnight_store(seeded_store):
    seeded_store.add_owner("u2", "bob@example.com", chat_handle="1002")
    seeded_store.claim_slot("u2", "23:30–00:30")
    return seeded_store


class TestReconcile:
    def test_early_join_counts_and_resets_counter(self, seeded_store):
        _set_count(seeded_store, "u1", 2)
        reconciler = _build(seeded_store)

        records = reconciler.reconcile([_event()], seeded_store.list_active_slots())

        assert len(records) == 1
        assert records[0].outcome == ATTENDED
        assert records[0].date == DAY
        assert records[0].source_meeting_id == "s1=="
        slot = seeded_store.get_slot("u1")
        assert slot.missed_count == 0
        assert slot.last_attended_at is not None

    def test_identity_matched_regardless_of_case_and_spacing(self, seeded_store):
        reconciler = _build(seeded_store)

        records = reconciler.reconcile(
            [_event(identity=" Alice@Example.COM ")], seeded_store.list_active_slots(),
        )

        assert [r.owner_id for r in records] == ["u1"]
        assert seeded_store.get_attendance("u1", DAY).outcome == ATTENDED

    def test_unknown_identity_writes_nothing(self, seeded_store):
        reconciler = _build(seeded_store)
        records = reconciler.reconcile(
            [_event(identity="stranger@example.com")], seeded_store.list_active_slots(),
        )
        assert records == []
        assert seeded_store.get_attendance("u1", DAY) is None

    def test_join_outside_window_writes_nothing(self, seeded_store):
        _set_count(seeded_store, "u1", 2)
        reconciler = _build(seeded_store)

        records = reconciler.reconcile(
            [_event(join=_local(1, 9, 0))], seeded_store.list_active_slots(),
        )

        assert records == []
        assert seeded_store.get_attendance("u1", DAY) is None
        assert seeded_store.get_slot("u1").missed_count == 2

    def test_leave_time_inside_window_counts(self, seeded_store):
        reconciler = _build(seeded_store)
        event = _event(join=_local(1, 12, 0), leave=_local(1, 14, 10))

        records = reconciler.reconcile([event], seeded_store.list_active_slots())

        assert [r.date for r in records] == [DAY]

    def test_reconciling_twice_is_idempotent(self, seeded_store):
        reconciler = _build(seeded_store)
        events = [_event(), _event(join=_local(1, 14, 2))]

        first = reconciler.reconcile(events, seeded_store.list_active_slots())
        second = reconciler.reconcile(events, seeded_store.list_active_slots())

        assert len(first) == 1
        assert len(second) == 1
        assert len(seeded_store.list_attendance("u1", DAY, DAY)) == 1
        assert seeded_store.get_slot("u1").missed_count == 0

    def test_overnight_join_counts_for_previous_day(self, overnight_store):
        reconciler = _build(overnight_store)

        records = reconciler.reconcile(
            [_event(identity="bob@example.com", join=_local(2, 0, 20))],
            overnight_store.list_active_slots(),
        )

        assert [r.date for r in records] == [DAY]
        assert overnight_store.get_attendance("u2", DAY).outcome == ATTENDED

    def test_malformed_slot_flagged_and_excluded(self, seeded_store):
        reconciler = _build(seeded_store)
        slot = seeded_store.get_slot("u1")
        slot.time_range = "half past two"

        records = reconciler.reconcile([_event()], [slot])

        assert records == []
        flagged = seeded_store.list_flagged_slots()
        assert [s.id for s, _ in flagged] == [slot.id]

    def test_reconcile_session_marks_processed(self, seeded_store):
        reconciler = _build(seeded_store)
        session = MeetingSession(
            session_id="s1==", meeting_id="123",
            start_time=_local(1, 14, 0), participants=[_event()],
        )

        records = reconciler.reconcile_session(session, seeded_store.list_active_slots())

        assert len(records) == 1
        assert seeded_store.is_session_processed("s1==") is True


class TestSweep:
    def test_missed_day_increments_and_warns(self, seeded_store):
        notices = MagicMock()
        _set_count(seeded_store, "u1", 2)
        reconciler = _build(seeded_store, notices=notices)

        missed = reconciler.sweep_unmatched(DAY)

        assert [s.owner_id for s in missed] == ["u1"]
        assert seeded_store.get_attendance("u1", DAY).outcome == MISSED
        assert seeded_store.get_slot("u1").missed_count == 3
        notices.send_missed_warning.assert_called_once()
        assert notices.send_missed_warning.call_args.args[1] == 3

    def test_sweeping_twice_counts_once(self, seeded_store):
        reconciler = _build(seeded_store)

        reconciler.sweep_unmatched(DAY)
        assert reconciler.sweep_unmatched(DAY) == []

        assert seeded_store.get_slot("u1").missed_count == 1

    def test_attended_day_not_missed(self, seeded_store):
        reconciler = _build(seeded_store)
        reconciler.reconcile([_event()], seeded_store.list_active_slots())

        assert reconciler.sweep_unmatched(DAY) == []
        assert seeded_store.get_attendance("u1", DAY).outcome == ATTENDED

    def test_unscheduled_weekday_skipped(self, seeded_store):
        seeded_store.set_owner_schedule("u1", ["monday", "wednesday"])
        reconciler = _build(seeded_store)

        assert reconciler.sweep_unmatched(DAY) == []
        assert seeded_store.get_attendance("u1", DAY) is None
        assert seeded_store.get_slot("u1").missed_count == 0

    def test_skip_window_honored_and_expires(self, seeded_store):
        slot = seeded_store.get_slot("u1")
        seeded_store.set_skip_window(slot.id, date(2025, 3, 1), date(2025, 3, 3))
        reconciler = _build(seeded_store)

        assert reconciler.sweep_unmatched(date(2025, 3, 2)) == []
        missed = reconciler.sweep_unmatched(date(2025, 3, 4))

        assert [s.id for s in missed] == [slot.id]
        assert seeded_store.get_slot("u1").missed_count == 1

    def test_five_misses_release_the_slot(self, seeded_store):
        notices = MagicMock()
        reconciler = _build(seeded_store, notices=notices)

        for day in range(1, 6):
            reconciler.sweep_unmatched(date(2025, 3, day))

        assert seeded_store.get_slot("u1") is None
        assert "14:00–14:30" in seeded_store.list_available_windows()
        notices.send_release_notice.assert_called_once()
        assert reconciler.sweep_unmatched(date(2025, 3, 6)) == []

    def test_late_overnight_attendance_upgrades_missed_row(self, overnight_store):
        reconciler = _build(overnight_store)
        reconciler.sweep_unmatched(DAY)
        assert overnight_store.get_slot("u2").missed_count == 1

        reconciler.reconcile(
            [_event(identity="bob@example.com", join=_local(2, 0, 10))],
            overnight_store.list_active_slots(),
        )

        assert overnight_store.get_attendance("u2", DAY).outcome == ATTENDED
        assert overnight_store.get_slot("u2").missed_count == 0

    def test_open_overnight_slot_not_released_before_it_ends(self, overnight_store):
        _set_count(overnight_store, "u2", 4)
        reconciler = _build(overnight_store)

        missed = reconciler.sweep_unmatched(DAY, now=_local(1, 23, 55))

        assert [s.owner_id for s in missed] == ["u1"]
        slot = overnight_store.get_slot("u2")
        assert slot is not None and slot.missed_count == 4
        assert overnight_store.get_attendance("u2", DAY) is None

        reconciler.reconcile(
            [_event(identity="bob@example.com", join=_local(1, 23, 40))],
            overnight_store.list_active_slots(),
        )

        assert overnight_store.get_attendance("u2", DAY).outcome == ATTENDED
        assert overnight_store.get_slot("u2").missed_count == 0

    def test_overnight_slot_swept_once_window_closes(self, overnight_store):
        _set_count(overnight_store, "u2", 4)
        reconciler = _build(overnight_store)

        early = reconciler.sweep_unmatched(DAY, now=_local(2, 0, 45))
        assert [s.owner_id for s in early] == ["u1"]
        assert overnight_store.get_slot("u2") is not None

        late = reconciler.sweep_unmatched(DAY, now=_local(2, 0, 46))

        assert [s.owner_id for s in late] == ["u2"]
        assert overnight_store.get_slot("u2") is None
        assert "23:30–00:30" in overnight_store.list_available_windows()


class TestManualAttendance:
    def test_manual_entry(self, seeded_store):
        _set_count(seeded_store, "u1", 3)
        reconciler = _build(seeded_store)
        now = _local(1, 15, 0)

        record = reconciler.record_manual_attendance("u1", DAY, now=now)

        assert record.outcome == ATTENDED
        assert record.source_meeting_id == f"manual_{int(now.timestamp())}"
        assert seeded_store.get_slot("u1").missed_count == 0

    def test_owner_without_slot(self, store):
        reconciler = _build(store)
        with pytest.raises(ValueError):
            reconciler.record_manual_attendance("ghost", DAY)
