"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance to satisfy the NotificationPort protocol.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import TelegramError

from storytime.ports.notification_port import DeliveryError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort. user_id is the chat id."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, user_id: int, text: str) -> None:
        try:
            await self._bot.send_message(chat_id=user_id, text=text)
        except TelegramError as exc:
            raise DeliveryError(f"Telegram delivery to {user_id} failed: {exc}") from exc
