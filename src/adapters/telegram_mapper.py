"""Telegram-to-core event mapping adapter.

This keeps Telethon-specific details out of the core pipeline.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from telethon.tl.custom import Message

from core.events import EventKind, InboundEvent, PageImage

LOGGER = logging.getLogger(__name__)

_MAGIC = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def sniff_mime(data: bytes, fallback: str = "image/jpeg") -> str:
    """Guess an image mime type from magic bytes."""

    for magic, mime in _MAGIC:
        if data.startswith(magic):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return fallback


def split_command(text: str) -> tuple[str, str]:
    """Split ``/engine@hintbot gpt`` into ``("engine", "gpt")``."""

    head, _, rest = text.strip().partition(" ")
    command = head[1:].split("@", 1)[0].lower()
    return command, rest.strip()


def _is_image_message(message: Message) -> bool:
    if message.photo:
        return True
    document = message.document
    mime = getattr(document, "mime_type", "") or ""
    return mime.startswith("image/")


async def _download_page(message: Message) -> Optional[PageImage]:
    data = await message.download_media(file=bytes)
    if not data:
        LOGGER.warning("Empty media download for message %s", message.id)
        return None
    declared = getattr(message.document, "mime_type", "") if message.document else ""
    return PageImage(data=data, mime=sniff_mime(data, declared or "image/jpeg"))


async def build_message_event(message: Message) -> InboundEvent:
    """Build a core event from a single (non-album) Telethon message."""

    text = message.raw_text or ""
    base = dict(chat_id=message.chat_id, user_id=message.sender_id, message_id=message.id)

    if _is_image_message(message):
        page = await _download_page(message)
        if page is not None:
            return InboundEvent(kind=EventKind.PHOTO, text=text, images=(page,), **base)

    if text.startswith("/"):
        command, args = split_command(text)
        return InboundEvent(kind=EventKind.COMMAND, command=command, text=args, **base)

    return InboundEvent(kind=EventKind.TEXT, text=text, **base)


async def build_album_event(messages: Iterable[Message]) -> Optional[InboundEvent]:
    """Collapse an album into one photo event with every page, in send order."""

    ordered = sorted(messages, key=lambda item: item.id)
    pages = []
    for message in ordered:
        if not _is_image_message(message):
            continue
        page = await _download_page(message)
        if page is not None:
            pages.append(page)
    if not pages:
        return None

    first = ordered[0]
    caption = next((message.raw_text for message in ordered if message.raw_text), "")
    return InboundEvent(
        chat_id=first.chat_id,
        user_id=first.sender_id,
        message_id=first.id,
        kind=EventKind.PHOTO,
        text=caption,
        images=tuple(pages),
        media_group_id=str(first.grouped_id or ""),
    )


def build_callback_event(event) -> InboundEvent:
    """Build a core event from a Telethon CallbackQuery event."""

    data = event.data or b""
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    return InboundEvent(
        chat_id=event.chat_id,
        user_id=event.sender_id,
        message_id=getattr(event, "message_id", None),
        kind=EventKind.CALLBACK,
        callback_data=data,
    )
