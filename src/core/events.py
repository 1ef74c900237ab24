"""Transport-neutral inbound events.

Adapters translate platform updates into these before anything in the core
looks at them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class EventKind(str, Enum):
    COMMAND = "command"
    TEXT = "text"
    PHOTO = "photo"
    CALLBACK = "callback"


@dataclass(frozen=True)
class PageImage:
    """One downloaded page of a task or solution photo."""

    data: bytes
    mime: str = "image/jpeg"


@dataclass(frozen=True)
class InboundEvent:
    chat_id: int
    kind: EventKind
    user_id: Optional[int] = None
    message_id: Optional[int] = None
    text: str = ""
    command: str = ""
    callback_data: str = ""
    images: tuple[PageImage, ...] = ()
    media_group_id: str = ""
