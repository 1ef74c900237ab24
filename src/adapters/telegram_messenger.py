"""Telegram outgoing-message adapter.

Implements the core MessengerPort on top of a Telethon bot client.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from telethon import Button

from core.models import Keyboard

LOGGER = logging.getLogger(__name__)

# Telegram rejects messages above this many characters.
MAX_MESSAGE_CHARS = 4096


def build_buttons(keyboard: Keyboard) -> Optional[list]:
    """Convert core keyboard rows into Telethon inline buttons."""

    if not keyboard:
        return None
    return [[Button.inline(button.label, data=button.payload.encode("utf-8")) for button in row] for row in keyboard]


class TelegramMessenger:
    """Sends plain-text replies with optional inline keyboards."""

    def __init__(self, client) -> None:
        self._client = client

    async def send(self, chat_id: int, text: str, buttons: Keyboard = ()) -> Optional[int]:
        if len(text) > MAX_MESSAGE_CHARS:
            text = text[: MAX_MESSAGE_CHARS - 1] + "…"
        message = await self._client.send_message(chat_id, text, buttons=build_buttons(buttons), parse_mode=None)
        return getattr(message, "id", None)

    async def send_to_admins(self, text: str, admin_chat_ids: Sequence[int]) -> None:
        for admin_chat_id in admin_chat_ids:
            try:
                await self._client.send_message(admin_chat_id, text[:MAX_MESSAGE_CHARS], parse_mode=None)
            except Exception:
                LOGGER.exception("Failed to deliver report to admin chat %s", admin_chat_id)
