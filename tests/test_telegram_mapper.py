from __future__ import annotations

import asyncio
from typing import Optional

from adapters.telegram_mapper import (
    build_album_event,
    build_callback_event,
    build_message_event,
    sniff_mime,
    split_command,
)
from adapters.telegram_messenger import TelegramMessenger, build_buttons
from core.events import EventKind
from core.models import Button

JPEG = b"\xff\xd8\xff\xe0jpeg-body"
PNG = b"\x89PNG\r\n\x1a\npng-body"


class DummyDocument:
    def __init__(self, mime_type: str) -> None:
        self.mime_type = mime_type


class DummyMessage:
    def __init__(
        self,
        *,
        message_id: int,
        text: str = "",
        photo: Optional[bytes] = None,
        document: Optional[DummyDocument] = None,
        grouped_id: Optional[int] = None,
    ) -> None:
        self.id = message_id
        self.chat_id = 500
        self.sender_id = 42
        self.raw_text = text
        self.photo = object() if photo is not None and document is None else None
        self.document = document
        self.grouped_id = grouped_id
        self._payload = photo

    async def download_media(self, file=None) -> Optional[bytes]:
        assert file is bytes
        return self._payload


class DummyCallback:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.chat_id = 500
        self.sender_id = 42
        self.message_id = 77


class DummyClient:
    def __init__(self) -> None:
        self.sent: list[tuple] = []

    async def send_message(self, chat_id, text, buttons=None, parse_mode=None):
        self.sent.append((chat_id, text, buttons, parse_mode))
        if chat_id == 13:
            raise RuntimeError("blocked")
        return type("Sent", (), {"id": 900})()


def test_sniff_mime() -> None:
    assert sniff_mime(JPEG) == "image/jpeg"
    assert sniff_mime(PNG) == "image/png"
    assert sniff_mime(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
    assert sniff_mime(b"unknown", "image/heic") == "image/heic"


def test_split_command_strips_bot_mention() -> None:
    assert split_command("/engine@hintbot_bot  gpt ") == ("engine", "gpt")
    assert split_command("/START") == ("start", "")


def test_photo_message_becomes_photo_event() -> None:
    message = DummyMessage(message_id=1, text="вот", photo=JPEG)

    event = asyncio.run(build_message_event(message))

    assert event.kind is EventKind.PHOTO
    assert event.images[0].data == JPEG
    assert event.images[0].mime == "image/jpeg"
    assert event.chat_id == 500 and event.user_id == 42 and event.message_id == 1


def test_image_document_uses_sniffed_mime() -> None:
    message = DummyMessage(message_id=2, photo=PNG, document=DummyDocument("image/png"))

    event = asyncio.run(build_message_event(message))

    assert event.kind is EventKind.PHOTO
    assert event.images[0].mime == "image/png"


def test_non_image_document_is_treated_as_text() -> None:
    message = DummyMessage(message_id=3, text="ответ 7", photo=b"%PDF", document=DummyDocument("application/pdf"))

    event = asyncio.run(build_message_event(message))

    assert event.kind is EventKind.TEXT
    assert event.text == "ответ 7"


def test_command_and_text_messages() -> None:
    command = asyncio.run(build_message_event(DummyMessage(message_id=4, text="/engine gpt")))
    text = asyncio.run(build_message_event(DummyMessage(message_id=5, text="3")))

    assert command.kind is EventKind.COMMAND
    assert command.command == "engine" and command.text == "gpt"
    assert text.kind is EventKind.TEXT and text.text == "3"


def test_album_collapses_into_one_event_in_send_order() -> None:
    messages = [
        DummyMessage(message_id=12, photo=PNG, grouped_id=900),
        DummyMessage(message_id=11, text="стр. 45", photo=JPEG, grouped_id=900),
    ]

    event = asyncio.run(build_album_event(messages))

    assert event is not None
    assert event.kind is EventKind.PHOTO
    assert [page.data for page in event.images] == [JPEG, PNG]
    assert event.media_group_id == "900"
    assert event.message_id == 11
    assert event.text == "стр. 45"


def test_album_without_images_is_dropped() -> None:
    messages = [DummyMessage(message_id=1, text="a", grouped_id=5)]

    assert asyncio.run(build_album_event(messages)) is None


def test_callback_event_decodes_payload() -> None:
    event = build_callback_event(DummyCallback(b"hint_next"))

    assert event.kind is EventKind.CALLBACK
    assert event.callback_data == "hint_next"
    assert event.message_id == 77


def test_build_buttons_encodes_payloads() -> None:
    rows = build_buttons(((Button("Да", "parse_yes"), Button("Нет", "parse_no")),))

    assert len(rows) == 1 and len(rows[0]) == 2
    assert rows[0][0].text == "Да"
    assert rows[0][0].data == b"parse_yes"
    assert build_buttons(()) is None


def test_messenger_truncates_and_reports_admin_failures() -> None:
    client = DummyClient()
    messenger = TelegramMessenger(client)

    message_id = asyncio.run(messenger.send(500, "x" * 5000))
    asyncio.run(messenger.send_to_admins("report", [13, 14]))

    assert message_id == 900
    assert len(client.sent[0][1]) == 4096
    assert client.sent[0][3] is None
    assert [sent[0] for sent in client.sent[1:]] == [13, 14]
