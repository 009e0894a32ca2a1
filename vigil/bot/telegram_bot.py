"""
Vigil — Application wiring.

Telegram is the reminder transport: the bot delivers slot reminders,
devotionals, weekly reports and account notices to owners' chats, and its
JobQueue drives every periodic job. There is no conversational command
surface; owners and slots are managed in the store.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from telegram.ext import Application, ApplicationBuilder

from vigil.config import settings

if TYPE_CHECKING:
    from vigil.ports.meeting_port import MeetingProviderPort
    from vigil.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


def build_app(
    provider: MeetingProviderPort | None = None,
    notifier: NotificationPort | None = None,
    db_path: str | None = None,
) -> Application:
    """Build the Telegram Application and register all scheduled jobs.

    Args:
        provider: Meeting provider port implementation. Defaults to ZoomMeetingProvider.
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
        db_path: SQLite file for the slot store. Defaults to DATABASE_PATH.
    """
    from vigil.core.lifecycle import SlotLifecycleManager
    from vigil.core.poller import MeetingPoller
    from vigil.core.reconciler import AttendanceReconciler
    from vigil.core.reminder_queue import ReminderQueue
    from vigil.core.reminders import ReminderService
    from vigil.core.scheduler import TriggerSet
    from vigil.data.db import SlotStore

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if provider is None:
        from vigil.integrations.zoom_api import ZoomMeetingProvider
        from vigil.integrations.zoom_auth import ZoomTokenHolder
        provider = ZoomMeetingProvider(ZoomTokenHolder())

    if notifier is None:
        from vigil.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    store = SlotStore(db_path=db_path)
    queue = ReminderQueue(notifier)
    reminders = ReminderService(store, queue)
    lifecycle = SlotLifecycleManager(store, notices=reminders)
    reconciler = AttendanceReconciler(store, lifecycle)
    poller = MeetingPoller(provider)
    triggers = TriggerSet(store, poller, reconciler, reminders, queue)

    app.bot_data["store"] = store
    app.bot_data["queue"] = queue
    app.bot_data["reconciler"] = reconciler
    app.bot_data["triggers"] = triggers

    triggers.register(app.job_queue)

    logger.info(
        "Vigil built for meeting %s, database %s", settings.ZOOM_MEETING_ID, store.db_path,
    )
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Vigil attendance service...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
