"""
Vigil — Attendance Reconciler.

Joins normalized participant events against the active slot roster and
writes one attendance row per (owner, date):

- reconcile(): positive matches from a live check or a concluded session
  become 'attended' rows and reset the slot's missed counter.
- sweep_unmatched(): once a day has closed, every active slot without a
  row for the date gets a 'missed' row and one missed-count increment.

Both operations are idempotent: the (owner, date) upsert is the boundary,
and only the sweep that creates a 'missed' row counts it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, tzinfo
from typing import TYPE_CHECKING, Iterable
from zoneinfo import ZoneInfo

from vigil.core.window import (
    MalformedSlotWindow,
    occurrence_date,
    occurrence_end,
    parse_time_range,
)
from vigil.data.models import (
    ATTENDED,
    MISSED,
    AttendanceRecord,
    MeetingSession,
    ParticipantEvent,
    PrayerSlot,
)

if TYPE_CHECKING:
    from vigil.core.lifecycle import SlotLifecycleManager
    from vigil.ports.store_port import SlotStorePort

logger = logging.getLogger(__name__)


class AttendanceReconciler:
    """Matches meeting participants to prayer slots and records outcomes."""

    def __init__(
        self,
        store: SlotStorePort,
        lifecycle: SlotLifecycleManager,
        tolerance_minutes: int | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        from vigil.config import settings

        self._store = store
        self._lifecycle = lifecycle
        self._tolerance = (
            settings.WINDOW_TOLERANCE_MINUTES
            if tolerance_minutes is None else tolerance_minutes
        )
        self._tz = tz or ZoneInfo(settings.TIMEZONE)

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    def _usable_slots(self, slots: Iterable[PrayerSlot]) -> list[PrayerSlot]:
        """Drop slots whose window text cannot be parsed, flagging them for review."""
        usable = []
        for slot in slots:
            try:
                parse_time_range(slot.time_range)
            except MalformedSlotWindow as exc:
                logger.warning("Slot #%d excluded from this pass: %s", slot.id, exc)
                try:
                    self._store.flag_slot_for_review(slot.id, str(exc))
                except Exception as flag_exc:
                    logger.error("Could not flag slot #%d: %s", slot.id, flag_exc)
                continue
            usable.append(slot)
        return usable

    def _index_by_identity(self, slots: Iterable[PrayerSlot]) -> dict[str, PrayerSlot]:
        index: dict[str, PrayerSlot] = {}
        for slot in self._usable_slots(slots):
            if not slot.owner_email or slot.owner_id is None:
                continue
            index[slot.owner_email.strip().lower()] = slot
        return index

    # ------------------------------------------------------------------
    # Positive matches
    # ------------------------------------------------------------------

    def _match(self, event: ParticipantEvent, slot: PrayerSlot) -> tuple[date, datetime] | None:
        """Return (occurrence date, matching moment) or None."""
        for point in event.presence_points():
            local = point.astimezone(self._tz) if point.tzinfo else point
            on_date = occurrence_date(local, slot.time_range, self._tolerance)
            if on_date is not None:
                return on_date, local
        return None

    def reconcile(
        self,
        events: Iterable[ParticipantEvent],
        active_slots: Iterable[PrayerSlot],
    ) -> list[AttendanceRecord]:
        """Record attendance for every event that falls inside its owner's slot.

        Events are processed in the order given. Unmatched identities and
        out-of-window events write nothing. Returns the stored records, one
        per (owner, date).
        """
        index = self._index_by_identity(active_slots)
        recorded: dict[tuple[str, date], AttendanceRecord] = {}

        for event in events:
            slot = index.get(event.identity.strip().lower())
            if slot is None:
                logger.debug("No active slot for participant %s", event.identity)
                continue
            try:
                match = self._match(event, slot)
                if match is None:
                    logger.debug(
                        "%s joined outside slot %s", event.identity, slot.time_range,
                    )
                    continue
                on_date, at = match
                key = (slot.owner_id, on_date)
                if key in recorded:
                    continue

                stored = self._store.upsert_attendance(AttendanceRecord(
                    owner_id=slot.owner_id,
                    slot_id=slot.id,
                    date=on_date,
                    outcome=ATTENDED,
                    join_time=event.join_time,
                    leave_time=event.leave_time,
                    source_meeting_id=event.session_id,
                ))
                self._lifecycle.record_attended(slot, at)
                recorded[key] = stored
                logger.info(
                    "Attendance: %s in slot #%d %s on %s",
                    slot.owner_id, slot.id, slot.time_range, on_date,
                )
            except Exception as exc:
                logger.error(
                    "Failed to reconcile participant %s: %s", event.identity, exc,
                )

        return list(recorded.values())

    def reconcile_session(
        self, session: MeetingSession, active_slots: Iterable[PrayerSlot],
    ) -> list[AttendanceRecord]:
        """Reconcile one concluded session, then mark it processed."""
        records = self.reconcile(session.participants, active_slots)
        self._store.mark_session_processed(session)
        return records

    # ------------------------------------------------------------------
    # End-of-day sweep
    # ------------------------------------------------------------------

    def _expected_on(self, slot: PrayerSlot, on_date: date) -> bool:
        if slot.is_skipping(on_date):
            logger.debug("Slot #%d skipping on %s", slot.id, on_date)
            return False
        days = self._store.list_owner_schedule(slot.owner_id)
        if days is not None and on_date.weekday() not in days:
            logger.debug("Slot #%d not scheduled on %s", slot.id, on_date.strftime("%A"))
            return False
        return True

    def sweep_unmatched(
        self, on_date: date, now: datetime | None = None,
    ) -> list[PrayerSlot]:
        """Mark every active slot without attendance for on_date as missed.

        A slot whose on_date occurrence can still be joined at `now` (end of
        window plus tolerance, across midnight) is left for a later sweep.
        Running the sweep again for the same date counts nothing twice.
        Returns the slots counted as missed by this call.
        """
        now = now or datetime.now(self._tz)
        self._lifecycle.reactivate_expired_skips(on_date)

        missed: list[PrayerSlot] = []
        for slot in self._usable_slots(self._store.list_active_slots()):
            try:
                if not self._expected_on(slot, on_date):
                    continue
                closes = occurrence_end(on_date, slot.time_range, self._tz, self._tolerance)
                if now <= closes:
                    logger.debug(
                        "Slot #%d still open for %s until %s", slot.id, on_date, closes,
                    )
                    continue
                created = self._store.insert_attendance(AttendanceRecord(
                    owner_id=slot.owner_id,
                    slot_id=slot.id,
                    date=on_date,
                    outcome=MISSED,
                ))
                if not created:
                    continue
                self._lifecycle.mark_missed(slot, on_date)
                missed.append(slot)
            except Exception as exc:
                logger.error("Sweep failed for slot #%d: %s", slot.id, exc)

        logger.info("Sweep for %s: %d slot(s) missed", on_date, len(missed))
        return missed

    # ------------------------------------------------------------------
    # Operator entry
    # ------------------------------------------------------------------

    def record_manual_attendance(
        self, owner_id: str, on_date: date, now: datetime | None = None,
    ) -> AttendanceRecord:
        """Record an operator-confirmed attendance and reset the missed counter.

        Raises ValueError if the owner holds no slot.
        """
        slot = self._store.get_slot(owner_id)
        if slot is None:
            raise ValueError(f"Owner {owner_id} has no slot")

        now = now or datetime.now(self._tz)
        stored = self._store.upsert_attendance(AttendanceRecord(
            owner_id=owner_id,
            slot_id=slot.id,
            date=on_date,
            outcome=ATTENDED,
            join_time=now,
            source_meeting_id=f"manual_{int(now.timestamp())}",
        ))
        self._lifecycle.record_attended(slot, now)
        logger.info("Manual attendance for %s on %s", owner_id, on_date)
        return stored
