"""
Vigil — Reminder Producers.

Builds reminder messages and puts them on the ReminderQueue:

- Slot reminders: `reminder_minutes` before each active slot starts
- Daily devotional: LLM-written verse and reflection, with a rotating
  fallback verse whenever the LLM is unavailable
- Weekly report: the owner's attendance over the last seven days
- Missed-day warnings and release notices from the lifecycle manager

Slot reminders, devotionals and reports are held back during the owner's
quiet hours. Warnings and release notices are account notices and are
always queued.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import TYPE_CHECKING, Hashable
from zoneinfo import ZoneInfo

from vigil.core.llm import complete
from vigil.core.window import (
    MalformedSlotWindow,
    format_time_range,
    is_in_quiet_hours,
    minutes_to_clock,
    parse_time_range,
)

if TYPE_CHECKING:
    from vigil.core.reminder_queue import ReminderQueue
    from vigil.data.models import PrayerSlot
    from vigil.ports.store_port import PreferenceSource, SlotStorePort

logger = logging.getLogger(__name__)

PRIORITY_SLOT_REMINDER = 1
PRIORITY_DEVOTIONAL = 2
PRIORITY_WEEKLY_REPORT = 3

_FALLBACK_VERSES = (
    "Psalm 5:3 — In the morning, LORD, you hear my voice; in the morning I lay "
    "my requests before you and wait expectantly.",
    "Isaiah 40:31 — But those who hope in the LORD will renew their strength.",
    "Philippians 4:6 — Do not be anxious about anything, but in every situation, "
    "by prayer and petition, present your requests to God.",
    "1 Timothy 2:1 — I urge that petitions, prayers, intercession and "
    "thanksgiving be made for all people.",
    "James 5:16 — The prayer of a righteous person is powerful and effective.",
    "Jeremiah 33:3 — Call to me and I will answer you.",
    "Psalm 121:1–2 — I lift up my eyes to the mountains; my help comes from the LORD.",
    "Ephesians 6:18 — Pray in the Spirit on all occasions with all kinds of "
    "prayers and requests.",
    "Colossians 4:2 — Devote yourselves to prayer, being watchful and thankful.",
    "Matthew 7:7 — Ask and it will be given to you; seek and you will find.",
    "Psalm 46:10 — Be still, and know that I am God.",
    "Romans 12:12 — Be joyful in hope, patient in affliction, faithful in prayer.",
    "Hebrews 4:16 — Let us approach God's throne of grace with confidence.",
    "Luke 18:1 — Always pray and not give up.",
)

_DEVOTIONAL_THEMES = (
    "Intimacy with God",
    "Faith for Nations",
    "Perseverance in Prayer",
    "Hearing God",
    "Unity of the Body",
    "Spiritual Warfare",
    "Thanksgiving and Praise",
)


def fallback_verse(today: date) -> str:
    """Pick a fixed verse, rotating by day of the year."""
    return _FALLBACK_VERSES[today.timetuple().tm_yday % len(_FALLBACK_VERSES)]


async def devotional_text(today: date) -> str:
    """Generate today's verse and reflection; fall back to a fixed verse on any failure."""
    theme = _DEVOTIONAL_THEMES[today.weekday()]
    try:
        text = await complete(
            system=(
                "You write short morning devotions for a team of intercessors. "
                "Start with one Bible verse (reference and text), then give a "
                "two to three sentence reflection on prayer. Stay under 120 words."
            ),
            user_message=f"Today is {today.isoformat()} ({today.strftime('%A')}). Theme: {theme}.",
            max_tokens=220,
        )
        text = text.strip()
        if text:
            return text
    except Exception as exc:
        logger.warning("Devotional generation failed, using fallback verse: %s", exc)
    return fallback_verse(today)


class ReminderService:
    """Decides who gets which reminder and when, and enqueues it."""

    def __init__(
        self,
        store: SlotStorePort,
        queue: ReminderQueue,
        preferences: PreferenceSource | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        from vigil.config import settings

        self._store = store
        self._queue = queue
        self._preferences = preferences if preferences is not None else store
        self._tz = tz or ZoneInfo(settings.TIMEZONE)

    def _now(self) -> datetime:
        return datetime.now(self._tz)

    # ------------------------------------------------------------------
    # Delivery plumbing
    # ------------------------------------------------------------------

    def in_quiet_hours(self, owner_id: str, now: datetime | None = None) -> bool:
        prefs = self._preferences.get_quiet_hours(owner_id)
        if not prefs.enabled:
            return False
        return is_in_quiet_hours(now or self._now(), prefs.start, prefs.end)

    def notify_owner(
        self,
        owner_id: str,
        text: str,
        priority: int,
        *,
        dedup_key: Hashable | None = None,
        respect_quiet_hours: bool = True,
        now: datetime | None = None,
    ) -> bool:
        """Queue a message for an owner's chat handle.

        Returns False when the owner has no chat handle, is in quiet hours,
        or the de-dup key is still fresh.
        """
        owner = self._store.get_owner(owner_id)
        if owner is None or not owner.chat_handle:
            logger.debug("Owner %s has no chat handle; not notified", owner_id)
            return False
        if respect_quiet_hours and self.in_quiet_hours(owner_id, now):
            logger.info("Quiet hours for %s; reminder held back", owner_id)
            return False
        return self._queue.enqueue(owner.chat_handle, text, priority, dedup_key)

    # ------------------------------------------------------------------
    # Slot reminders
    # ------------------------------------------------------------------

    def queue_slot_reminders(self, now: datetime | None = None) -> int:
        """Queue reminders for slots starting reminder_minutes from now.

        Returns the number of reminders queued.
        """
        now = now or self._now()
        current = now.hour * 60 + now.minute
        queued = 0

        for slot in self._store.list_active_slots():
            if slot.reminder_minutes is None or slot.owner_id is None:
                continue
            try:
                start, _ = parse_time_range(slot.time_range)
            except MalformedSlotWindow as exc:
                logger.warning("No reminder for slot #%d: %s", slot.id, exc)
                continue
            if (start - slot.reminder_minutes) % (24 * 60) != current:
                continue

            text = (
                f"🔔 Your prayer slot {format_time_range(slot.time_range)} starts in "
                f"{slot.reminder_minutes} minutes.\n\n"
                "Find a quiet space and join the prayer meeting on time. 🙏"
            )
            try:
                if self.notify_owner(
                    slot.owner_id,
                    text,
                    PRIORITY_SLOT_REMINDER,
                    dedup_key=(slot.id, minutes_to_clock(current)),
                    now=now,
                ):
                    queued += 1
            except Exception as exc:
                logger.error("Failed to queue reminder for slot #%d: %s", slot.id, exc)

        if queued:
            logger.info("Queued %d slot reminder(s) at %s", queued, minutes_to_clock(current))
        return queued

    # ------------------------------------------------------------------
    # Lifecycle notices (always delivered)
    # ------------------------------------------------------------------

    def send_missed_warning(self, slot: PrayerSlot, missed_count: int) -> bool:
        from vigil.config import settings

        remaining = settings.RELEASE_THRESHOLD - missed_count
        text = (
            f"⚠️ You have missed your prayer slot {format_time_range(slot.time_range)} "
            f"{missed_count} days in a row.\n\n"
            f"After {remaining} more missed day(s) the slot will be released "
            "to another intercessor."
        )
        return self.notify_owner(
            slot.owner_id, text, PRIORITY_SLOT_REMINDER, respect_quiet_hours=False,
        )

    def send_release_notice(self, slot: PrayerSlot) -> bool:
        text = (
            f"Your prayer slot {format_time_range(slot.time_range)} has been released "
            "after repeated missed days. You are welcome to claim a new slot any time."
        )
        return self.notify_owner(
            slot.owner_id, text, PRIORITY_SLOT_REMINDER, respect_quiet_hours=False,
        )

    # ------------------------------------------------------------------
    # Daily devotional and weekly report
    # ------------------------------------------------------------------

    async def queue_daily_devotionals(
        self, today: date | None = None, now: datetime | None = None,
    ) -> int:
        now = now or self._now()
        today = today or now.date()
        slots = self._store.list_active_slots()
        if not slots:
            return 0

        verse = await devotional_text(today)
        queued = 0
        for slot in slots:
            owner = self._store.get_owner(slot.owner_id)
            name = owner.display_name if owner and owner.display_name else "Intercessor"
            text = (
                f"🌅 Good morning, {name}!\n\n"
                f"Your prayer slot today: {format_time_range(slot.time_range)}\n\n"
                f"{verse}"
            )
            try:
                if self.notify_owner(slot.owner_id, text, PRIORITY_DEVOTIONAL, now=now):
                    queued += 1
            except Exception as exc:
                logger.error("Failed to queue devotional for %s: %s", slot.owner_id, exc)

        logger.info("Queued %d devotional(s) for %s", queued, today)
        return queued

    def queue_weekly_reports(
        self, today: date | None = None, now: datetime | None = None,
    ) -> int:
        now = now or self._now()
        today = today or now.date()
        since = today - timedelta(days=6)
        queued = 0

        for slot in self._store.list_active_slots():
            try:
                summary = self._store.attendance_summary(slot.owner_id, since, today)
                text = (
                    "📊 Weekly Prayer Report\n\n"
                    f"Slot: {format_time_range(slot.time_range)}\n"
                    f"Attended: {summary.attended} of {summary.total} day(s) ({summary.rate}%)\n"
                    f"Missed: {summary.missed}\n"
                    f"Current streak: {summary.streak} day(s)\n\n"
                    "Keep standing in the gap. 🙏"
                )
                if self.notify_owner(slot.owner_id, text, PRIORITY_WEEKLY_REPORT, now=now):
                    queued += 1
            except Exception as exc:
                logger.error("Failed to queue weekly report for %s: %s", slot.owner_id, exc)

        logger.info("Queued %d weekly report(s) for week ending %s", queued, today)
        return queued
