"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance to satisfy the NotificationPort protocol.
Recipients are Telegram chat ids stored as owner chat handles.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, recipient: str, text: str) -> bool:
        try:
            await self._bot.send_message(chat_id=recipient, text=text)
        except TelegramError as exc:
            logger.warning("Telegram send to %s failed: %s", recipient, exc)
            return False
        return True
