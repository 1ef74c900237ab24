"""Best-effort timeline and metrics recording.

Telemetry writes never break the conversation: a failing insert is logged and
the event handling carries on.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from core.models import ChatSession, MetricEvent, TimelineEvent
from core.ports import StoragePort

LOGGER = logging.getLogger(__name__)

DIRECTION_IN = "in"
DIRECTION_OUT = "out"
DIRECTION_API = "api"
DIRECTION_BUTTON = "button"

_IMAGE_KEYS = ("images", "image")
MAX_TIMELINE_TEXT = 4000


def redact_payload(payload: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Drop base64 image bodies so audit rows stay small."""

    if payload is None:
        return None
    redacted = dict(payload)
    for key in _IMAGE_KEYS:
        value = redacted.get(key)
        if isinstance(value, (list, tuple)):
            redacted[key] = f"<{len(value)} image(s)>"
        elif isinstance(value, str) and value:
            redacted[key] = f"<image {len(value)} b64 chars>"
    return redacted


class Telemetry:
    def __init__(self, storage: StoragePort, provider: str = "llm_proxy") -> None:
        self._storage = storage
        self._provider = provider

    def timeline(self, event: TimelineEvent) -> None:
        try:
            self._storage.insert_timeline_event(event)
        except Exception:
            LOGGER.exception("Failed to record timeline event %s", event.event_type)

    def metric(self, event: MetricEvent) -> None:
        try:
            self._storage.insert_metric_event(event)
        except Exception:
            LOGGER.exception("Failed to record metric for stage %s", event.stage)

    def message(
        self,
        session: ChatSession,
        direction: str,
        event_type: str,
        text: str = "",
        message_id: Optional[int] = None,
    ) -> None:
        self.timeline(
            TimelineEvent(
                chat_id=session.chat_id,
                session_id=session.session_id,
                direction=direction,
                event_type=event_type,
                message_id=message_id,
                text=text[:MAX_TIMELINE_TEXT],
            )
        )

    def stage(
        self,
        session: ChatSession,
        stage: str,
        ok: bool,
        duration_ms: int,
        request: Optional[dict[str, Any]] = None,
        response: Optional[dict[str, Any]] = None,
        error: str = "",
        http_code: Optional[int] = None,
        cached: bool = False,
    ) -> None:
        provider = f"{self._provider}:{session.engine}" if session.engine else self._provider
        self.timeline(
            TimelineEvent(
                chat_id=session.chat_id,
                session_id=session.session_id,
                direction=DIRECTION_API,
                event_type=stage,
                provider=provider,
                ok=ok,
                latency_ms=duration_ms,
                input_payload=redact_payload(request),
                output_payload=response,
                error=error,
            )
        )
        self.metric(
            MetricEvent(
                stage=stage,
                provider=provider,
                ok=ok,
                duration_ms=duration_ms,
                chat_id=session.chat_id,
                session_id=session.session_id,
                error=error,
                http_code=http_code,
                details={"cached": cached} if cached else None,
            )
        )
