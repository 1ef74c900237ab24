"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, the LLM proxy and the chat
transport so that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional, Protocol, Sequence

from core.contracts import (
    AnalogueRequest,
    AnalogueResult,
    CheckRequest,
    CheckResult,
    DetectRequest,
    DetectResult,
    HintRequest,
    HintResult,
    NormalizeRequest,
    NormalizeResult,
    OCRRequest,
    OCRResult,
    ParseRequest,
    ParseResult,
)
from core.models import (
    ChatSession,
    HintCacheEntry,
    Keyboard,
    MetricEvent,
    ParseRecord,
    TimelineEvent,
)


class StoragePort(Protocol):
    """Repository operations required by the core pipeline."""

    def upsert_parse(self, record: ParseRecord) -> None:
        ...

    def find_parse(self, fingerprint: str, engine: str) -> Optional[ParseRecord]:
        ...

    def find_accepted_parse_for_session(self, session_id: str) -> Optional[ParseRecord]:
        ...

    def mark_accepted(self, fingerprint: str, engine: str, reason: str) -> bool:
        ...

    def upsert_hint(self, entry: HintCacheEntry) -> None:
        ...

    def find_hint(self, fingerprint: str, engine: str, level: int) -> Optional[HintCacheEntry]:
        ...

    def upsert_session(self, session: ChatSession) -> None:
        ...

    def find_session(self, chat_id: int) -> Optional[ChatSession]:
        ...

    def insert_timeline_event(self, event: TimelineEvent) -> None:
        ...

    def insert_metric_event(self, event: MetricEvent) -> None:
        ...

    def list_timeline_events(self, chat_id: int, limit: int = 50) -> list[TimelineEvent]:
        ...

    def purge_older_than(self, age: timedelta) -> int:
        ...


class LLMPort(Protocol):
    """One coroutine per remote pipeline stage."""

    async def detect(self, engine: str, request: DetectRequest) -> DetectResult:
        ...

    async def parse(self, engine: str, request: ParseRequest) -> ParseResult:
        ...

    async def hint(self, engine: str, request: HintRequest) -> HintResult:
        ...

    async def ocr(self, engine: str, request: OCRRequest) -> OCRResult:
        ...

    async def normalize(self, engine: str, request: NormalizeRequest) -> NormalizeResult:
        ...

    async def check_solution(self, engine: str, request: CheckRequest) -> CheckResult:
        ...

    async def analogue_solution(self, engine: str, request: AnalogueRequest) -> AnalogueResult:
        ...


class MessengerPort(Protocol):
    """Outgoing chat operations required by the orchestrator."""

    async def send(self, chat_id: int, text: str, buttons: Keyboard = ()) -> Optional[int]:
        ...

    async def send_to_admins(self, text: str, admin_chat_ids: Sequence[int]) -> None:
        ...
