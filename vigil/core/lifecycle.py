"""
Vigil — Slot Lifecycle Manager.

Owns the per-slot state machine:

    active --attended--> active     missed_count := 0, last_attended_at := now
    active --missed-->   active     missed_count += 1
    active --missed-->   released   when missed_count + 1 reaches the threshold;
                                    owner cleared, window back in the pool
    skipped --window over--> active

Every counter write is a compare-and-swap on missed_count. A stale read is
re-read and retried once; a second conflict is logged and left for the
next sweep to correct.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime
from typing import TYPE_CHECKING, Callable

from vigil.data.models import ACTIVE, ATTENDED, RELEASED, SKIPPED, PrayerSlot
from vigil.ports.store_port import ConcurrentCounterConflict

if TYPE_CHECKING:
    from vigil.core.reminders import ReminderService
    from vigil.ports.store_port import SlotStorePort

logger = logging.getLogger(__name__)

WARNING_COUNTS = (3, 4)

# A transition inspects the freshly read slot and returns the counter update
# to apply, or None when there is nothing to do.
_Transition = Callable[[PrayerSlot], "dict | None"]


class SlotLifecycleManager:
    """Applies attendance outcomes to slots with conditional updates."""

    def __init__(
        self,
        store: SlotStorePort,
        notices: ReminderService | None = None,
        release_threshold: int | None = None,
    ) -> None:
        if release_threshold is None:
            from vigil.config import settings
            release_threshold = settings.RELEASE_THRESHOLD

        self._store = store
        self._notices = notices
        self._release_threshold = release_threshold

    # ------------------------------------------------------------------
    # Compare-and-swap with one retry
    # ------------------------------------------------------------------

    def _apply(self, slot: PrayerSlot, transition: _Transition) -> PrayerSlot | None:
        """Apply a transition with one re-read-and-retry on a stale count.

        Returns the slot as written, or None when the transition declined
        or the slot disappeared.
        Raises ConcurrentCounterConflict after the second lost race.
        """
        current = slot
        for attempt in range(2):
            changes = transition(current)
            if changes is None:
                return None
            if self._store.update_slot_counters(
                current.id, current.missed_count, **changes,
            ):
                updated = replace(current, **changes)
                if changes.get("status") == RELEASED:
                    updated.owner_id = None
                    updated.owner_email = None
                return updated

            logger.info(
                "Slot #%d changed under us (attempt %d); re-reading",
                current.id, attempt + 1,
            )
            fresh = self._store.get_slot_by_id(current.id)
            if fresh is None:
                return None
            current = fresh

        raise ConcurrentCounterConflict(slot.id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def record_attended(self, slot: PrayerSlot, at: datetime) -> PrayerSlot | None:
        """Reset the missed counter after a confirmed attendance."""

        def transition(current: PrayerSlot) -> dict | None:
            if current.status == RELEASED or current.owner_id != slot.owner_id:
                return None
            return {"missed_count": 0, "last_attended_at": at}

        try:
            updated = self._apply(slot, transition)
        except ConcurrentCounterConflict as exc:
            logger.warning("Attendance reset skipped: %s", exc)
            return None

        if updated is not None and slot.missed_count:
            logger.info(
                "Slot #%d attended; missed count %d → 0", slot.id, slot.missed_count,
            )
        return updated

    def mark_missed(self, slot: PrayerSlot, on_date: date) -> PrayerSlot | None:
        """Count one missed day; release the slot when the threshold is reached."""

        def transition(current: PrayerSlot) -> dict | None:
            if current.status != ACTIVE or current.owner_id != slot.owner_id:
                return None
            # A live match may have landed for this day between read and write
            record = self._store.get_attendance(slot.owner_id, on_date)
            if record is not None and record.outcome == ATTENDED:
                return None
            new_count = current.missed_count + 1
            if new_count >= self._release_threshold:
                return {"missed_count": 0, "status": RELEASED}
            return {"missed_count": new_count}

        try:
            updated = self._apply(slot, transition)
        except ConcurrentCounterConflict as exc:
            logger.warning("Missed-day update skipped: %s", exc)
            return None
        if updated is None:
            return None

        if updated.status == RELEASED:
            logger.info(
                "Slot #%d %s released after %d missed days (owner %s)",
                slot.id, slot.time_range, self._release_threshold, slot.owner_id,
            )
            self._notify("release", slot, self._release_threshold)
        else:
            logger.info(
                "Slot #%d %s missed on %s (%d/%d)",
                slot.id, slot.time_range, on_date,
                updated.missed_count, self._release_threshold,
            )
            if updated.missed_count in WARNING_COUNTS:
                self._notify("warning", slot, updated.missed_count)
        return updated

    def reactivate_expired_skips(self, today: date) -> list[PrayerSlot]:
        """Return skipped slots whose skip window ended before today to active."""
        reactivated = []
        for slot in self._store.list_skipped_slots():
            if slot.skip_end is None or slot.skip_end >= today:
                continue

            def transition(current: PrayerSlot) -> dict | None:
                if current.status != SKIPPED:
                    return None
                return {"missed_count": current.missed_count, "status": ACTIVE}

            try:
                updated = self._apply(slot, transition)
            except ConcurrentCounterConflict as exc:
                logger.warning("Skip reactivation deferred: %s", exc)
                continue
            if updated is not None and updated.status == ACTIVE:
                logger.info("Slot #%d back from skip (ended %s)", slot.id, slot.skip_end)
                reactivated.append(updated)
        return reactivated

    def _notify(self, kind: str, slot: PrayerSlot, count: int) -> None:
        """Advisory notices never block or undo a transition."""
        if self._notices is None or slot.owner_id is None:
            return
        try:
            if kind == "release":
                self._notices.send_release_notice(slot)
            else:
                self._notices.send_missed_warning(slot, count)
        except Exception as exc:
            logger.error("Failed to queue %s notice for slot #%d: %s", kind, slot.id, exc)
