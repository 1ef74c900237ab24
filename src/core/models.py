"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
import uuid

from core.contracts import DetectResult, DetectedTask, HintResult, ParseResult
from core.events import PageImage
from core.state_machine import ConversationState


@dataclass(frozen=True)
class Button:
    label: str
    payload: str


Keyboard = tuple[tuple[Button, ...], ...]


@dataclass
class HintProgress:
    """Hint cursor for the active task."""

    next_level: int = 1
    max_hints: int = 3


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ChatSession:
    """Per-chat conversation state.

    Only the durable part (state, ids, last-known task features) is persisted;
    pending pipeline pointers live in memory for the duration of one task.
    """

    chat_id: int
    state: ConversationState
    session_id: str = field(default_factory=new_session_id)
    grade: int = 0
    subject: str = ""
    task_type: str = ""
    fingerprint: str = ""
    engine: str = ""
    pending_images: tuple[PageImage, ...] = ()
    media_group_id: str = ""
    pending_parse: Optional[ParseRecord] = None
    pending_choice: tuple[DetectedTask, ...] = ()
    detect: Optional[DetectResult] = None
    hint_progress: Optional[HintProgress] = None

    def start_task(self) -> None:
        """Rotate the session id and drop every pointer of the prior task."""

        self.session_id = new_session_id()
        self.fingerprint = ""
        self.task_type = ""
        self.pending_images = ()
        self.media_group_id = ""
        self.pending_parse = None
        self.pending_choice = ()
        self.detect = None
        self.hint_progress = None


@dataclass(frozen=True)
class ParseRecord:
    """Persisted parse of one task, keyed by fingerprint and engine."""

    fingerprint: str
    engine: str
    chat_id: int
    session_id: str
    result: ParseResult
    accepted: bool = False
    accept_reason: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def raw_task_text(self) -> str:
        return self.result.raw_task_text

    @property
    def subject(self) -> str:
        return self.result.task.subject

    @property
    def grade(self) -> int:
        return self.result.task.grade

    @property
    def task_type(self) -> str:
        return self.result.task_type

    @property
    def combined_subpoints(self) -> bool:
        return self.result.task.combined_subpoints

    @property
    def needs_user_confirmation(self) -> bool:
        return self.result.needs_user_confirmation


@dataclass(frozen=True)
class HintCacheEntry:
    """Cached hint payload for one (fingerprint, engine, level) key."""

    fingerprint: str
    engine: str
    level: int
    result: HintResult
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class TimelineEvent:
    """Append-only record of one user-visible message or external call."""

    chat_id: int
    session_id: str
    direction: str
    event_type: str
    provider: str = ""
    ok: bool = True
    latency_ms: Optional[int] = None
    message_id: Optional[int] = None
    text: str = ""
    input_payload: Optional[dict[str, Any]] = None
    output_payload: Optional[dict[str, Any]] = None
    error: str = ""


@dataclass(frozen=True)
class MetricEvent:
    """Append-only stage metric."""

    stage: str
    provider: str
    ok: bool
    duration_ms: int
    chat_id: int
    session_id: str = ""
    error: str = ""
    http_code: Optional[int] = None
    details: Optional[dict[str, Any]] = None
