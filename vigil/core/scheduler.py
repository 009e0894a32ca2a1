"""
Vigil — Schedule Trigger Set.

Periodic jobs that drive the whole system, registered on the chat
application's JobQueue:

    slot reminders        every REMINDER_CHECK_SECONDS
    live-session check    every LIVE_POLL_SECONDS
    recent-session poll   every SESSION_POLL_SECONDS
    queue drain           every QUEUE_DRAIN_SECONDS
    previous-day sweep    daily at SWEEP_TIME
    devotional            daily at DEVOTIONAL_TIME
    weekly report         WEEKLY_REPORT_DAY at WEEKLY_REPORT_TIME

A job never overlaps itself: a tick that fires while the previous run is
still going is skipped. Different jobs may run concurrently. No exception
escapes into the job queue.

This module is provider-agnostic: it depends on the poller, reconciler,
reminder producers and queue, not on specific adapters.
"""

from __future__ import annotations

import logging
from datetime import datetime, time as dt_time, timedelta, tzinfo
from typing import TYPE_CHECKING, Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from vigil.ports.meeting_port import ProviderAuthError, ProviderError, ProviderRateLimited

if TYPE_CHECKING:
    from telegram.ext import JobQueue

    from vigil.core.poller import MeetingPoller
    from vigil.core.reconciler import AttendanceReconciler
    from vigil.core.reminder_queue import ReminderQueue
    from vigil.core.reminders import ReminderService
    from vigil.ports.store_port import SlotStorePort

logger = logging.getLogger(__name__)


def _clock_time(text: str, tz: tzinfo) -> dt_time:
    hour, minute = text.split(":")
    return dt_time(hour=int(hour), minute=int(minute), tzinfo=tz)


class TriggerSet:
    """Owns the periodic jobs and their non-overlap guard."""

    def __init__(
        self,
        store: SlotStorePort,
        poller: MeetingPoller,
        reconciler: AttendanceReconciler,
        reminders: ReminderService,
        queue: ReminderQueue,
        tz: tzinfo | None = None,
    ) -> None:
        from vigil.config import settings

        self._store = store
        self._poller = poller
        self._reconciler = reconciler
        self._reminders = reminders
        self._queue = queue
        self._tz = tz or ZoneInfo(settings.TIMEZONE)
        self._running: set[str] = set()

    def _now(self) -> datetime:
        return datetime.now(self._tz)

    # ------------------------------------------------------------------
    # Guard
    # ------------------------------------------------------------------

    async def run_guarded(self, name: str, job: Callable[[], Awaitable[Any]]) -> bool:
        """Run job unless a previous run of the same name is still going.

        Returns True if the job ran to completion, False if it was skipped
        or failed.
        """
        if name in self._running:
            logger.warning("Job %s still running; skipping this tick", name)
            return False

        self._running.add(name)
        try:
            await job()
            return True
        except ProviderRateLimited as exc:
            logger.warning("Job %s: rate limited, cycle skipped (%s)", name, exc)
        except ProviderAuthError as exc:
            logger.error("Job %s: provider authentication failed: %s", name, exc)
        except ProviderError as exc:
            logger.warning("Job %s: provider unavailable: %s", name, exc)
        except Exception:
            logger.exception("Job %s failed", name)
        finally:
            self._running.discard(name)
        return False

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def check_live_session(self) -> None:
        events = await self._poller.fetch_live_participants()
        if not events:
            return
        self._reconciler.reconcile(events, self._store.list_active_slots())

    async def poll_recent_sessions(self) -> None:
        sessions = await self._poller.fetch_recent_sessions(
            is_processed=self._store.is_session_processed,
        )
        for session in sessions:
            try:
                self._reconciler.reconcile_session(session, self._store.list_active_slots())
            except Exception as exc:
                logger.error("Failed to reconcile session %s: %s", session.session_id, exc)

    async def run_sweep(self) -> None:
        # Sweeps the previous day, once its overnight windows have closed
        now = self._now()
        self._reconciler.sweep_unmatched(now.date() - timedelta(days=1), now=now)

    async def check_slot_reminders(self) -> None:
        self._reminders.queue_slot_reminders(self._now())

    async def drain_queue(self) -> None:
        await self._queue.drain()

    async def send_devotionals(self) -> None:
        await self._reminders.queue_daily_devotionals(now=self._now())

    async def send_weekly_reports(self) -> None:
        self._reminders.queue_weekly_reports(now=self._now())

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _callback(self, name: str, job: Callable[[], Awaitable[Any]]):
        async def _job_callback(context: Any) -> None:
            await self.run_guarded(name, job)

        return _job_callback

    def register(self, job_queue: JobQueue) -> None:
        """Register every job on a python-telegram-bot JobQueue."""
        from vigil.config import settings

        repeating = (
            ("slot_reminders", self.check_slot_reminders, settings.REMINDER_CHECK_SECONDS, 5),
            ("live_session_check", self.check_live_session, settings.LIVE_POLL_SECONDS, 15),
            ("recent_session_poll", self.poll_recent_sessions, settings.SESSION_POLL_SECONDS, 30),
            ("queue_drain", self.drain_queue, settings.QUEUE_DRAIN_SECONDS, 10),
        )
        for name, job, interval, first in repeating:
            job_queue.run_repeating(
                self._callback(name, job), interval=interval, first=first, name=name,
            )

        job_queue.run_daily(
            self._callback("sweep", self.run_sweep),
            time=_clock_time(settings.SWEEP_TIME, self._tz),
            name="sweep",
        )
        job_queue.run_daily(
            self._callback("devotional", self.send_devotionals),
            time=_clock_time(settings.DEVOTIONAL_TIME, self._tz),
            name="devotional",
        )
        # JobQueue counts days from Sunday=0; date.weekday() from Monday=0
        job_queue.run_daily(
            self._callback("weekly_report", self.send_weekly_reports),
            time=_clock_time(settings.WEEKLY_REPORT_TIME, self._tz),
            days=((settings.weekly_report_weekday + 1) % 7,),
            name="weekly_report",
        )

        logger.info(
            "Scheduled jobs: reminders/%ds, live/%ds, sessions/%ds, drain/%ds, "
            "sweep %s, devotional %s, weekly report %s %s (%s)",
            settings.REMINDER_CHECK_SECONDS, settings.LIVE_POLL_SECONDS,
            settings.SESSION_POLL_SECONDS, settings.QUEUE_DRAIN_SECONDS,
            settings.SWEEP_TIME, settings.DEVOTIONAL_TIME,
            settings.WEEKLY_REPORT_DAY, settings.WEEKLY_REPORT_TIME,
            settings.TIMEZONE,
        )
