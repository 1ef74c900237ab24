"""Pipeline stage functions (core domain).

Each stage follows the same skeleton: build the request from session context,
consult the cache, call the LLM proxy on a miss, then write the result back.
Stages never touch conversation state; the orchestrator does that.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Sequence

from core.cache import ACCEPT_AUTO, PipelineCache
from core.config import CacheConfig, PipelineConfig
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
    StudentProfile,
)
from core.errors import ExternalCallError
from core.events import PageImage
from core.models import ChatSession, ParseRecord
from core.ports import LLMPort
from core.routing import (
    RoutingTrace,
    build_routing_context,
    format_routing_trace,
    profile_core,
    select_template,
)
from core.telemetry import Telemetry
from core.templates import TemplateRegistry

LOGGER = logging.getLogger(__name__)


def encode_images(pages: Sequence[PageImage]) -> tuple[str, ...]:
    return tuple(base64.b64encode(page.data).decode("ascii") for page in pages)


def hint_mode(level: int) -> str:
    return "learn" if level <= 1 else "rescue"


class StageRunner:
    """Runs one pipeline stage at a time against the cache and the LLM proxy."""

    def __init__(
        self,
        llm: LLMPort,
        cache: PipelineCache,
        registry: TemplateRegistry,
        telemetry: Telemetry,
        pipeline: PipelineConfig,
        cache_config: CacheConfig,
    ) -> None:
        self._llm = llm
        self._cache = cache
        self._registry = registry
        self._telemetry = telemetry
        self._pipeline = pipeline
        self._cache_config = cache_config

    @property
    def cache(self) -> PipelineCache:
        return self._cache

    async def _call(
        self,
        stage: str,
        session: ChatSession,
        call: Callable[[str, Any], Awaitable[Any]],
        request: Any,
    ) -> Any:
        started = time.monotonic()
        try:
            result = await call(session.engine, request)
        except ExternalCallError as exc:
            elapsed = int((time.monotonic() - started) * 1000)
            LOGGER.warning("Stage %s failed for chat %s: %s", stage, session.chat_id, exc.message)
            self._telemetry.stage(
                session,
                stage,
                ok=False,
                duration_ms=elapsed,
                request=request.to_payload(),
                error=exc.message,
                http_code=exc.status_code,
            )
            raise
        elapsed = int((time.monotonic() - started) * 1000)
        LOGGER.info("Stage %s ok for chat %s in %d ms", stage, session.chat_id, elapsed)
        self._telemetry.stage(
            session,
            stage,
            ok=True,
            duration_ms=elapsed,
            request=request.to_payload(),
            response=result.to_payload(),
        )
        return result

    # --- task intake ------------------------------------------------------------

    def find_accepted(self, session: ChatSession) -> Optional[ParseRecord]:
        """Authoritative parse for the active task, if one was accepted."""

        record = None
        if session.fingerprint:
            record = self._cache.find_accepted(
                session.fingerprint, session.engine, self._cache_config.parse_max_age
            )
        if record is None:
            record = self._cache.find_accepted_for_session(session.session_id)
        return record

    async def detect(self, session: ChatSession, pages: Sequence[PageImage]) -> DetectResult:
        request = DetectRequest(
            images=encode_images(pages),
            mime=pages[0].mime,
            locale=self._pipeline.locale,
            grade_hint=session.grade,
            max_tasks=self._pipeline.max_detect_tasks,
        )
        return await self._call("detect", session, self._llm.detect, request)

    async def parse(
        self,
        session: ChatSession,
        pages: Sequence[PageImage],
        detect: Optional[DetectResult] = None,
        choice_index: int = -1,
        choice_brief: str = "",
    ) -> tuple[ParseRecord, bool]:
        """Return ``(record, from_cache)`` for the session's fingerprint.

        A cached parse is reused only when it was accepted; drafts are
        regenerated and overwritten.
        """

        cached = self._cache.find_accepted(
            session.fingerprint, session.engine, self._cache_config.parse_max_age
        )
        if cached is not None:
            LOGGER.info("Parse cache hit for chat %s", session.chat_id)
            self._telemetry.stage(session, "parse", ok=True, duration_ms=0, cached=True)
            return cached, True

        request = ParseRequest(
            images=encode_images(pages),
            task_id=session.session_id,
            locale=self._pipeline.locale,
            subject_candidate=detect.subject_hint if detect else "",
            subject_confidence=detect.subject_confidence if detect else "low",
            grade=session.grade,
            selected_task_index=choice_index,
            selected_task_brief=choice_brief,
        )
        result = await self._call("parse", session, self._llm.parse, request)
        record = self._cache.upsert_draft(
            session.fingerprint, session.engine, session.chat_id, session.session_id, result
        )
        return record, False

    def accept(self, session: ChatSession, reason: str = ACCEPT_AUTO) -> None:
        self._cache.mark_accepted(session.fingerprint, session.engine, reason)

    # --- hints ------------------------------------------------------------------

    async def hint(self, session: ChatSession, record: ParseRecord, level: int) -> HintResult:
        """Return the hint for ``level``, generating it only on a cache miss."""

        fingerprint = record.fingerprint
        max_age = self._cache_config.hint_max_age
        entry = self._cache.find_hint(fingerprint, session.engine, level, max_age)
        if entry is not None:
            LOGGER.info("Hint L%d cache hit for chat %s", level, session.chat_id)
            self._telemetry.stage(session, "hint", ok=True, duration_ms=0, cached=True)
            return entry.result

        previous = self._cache.previous_hints(fingerprint, session.engine, level, max_age)
        context = build_routing_context(record.result.task, record.result.items)
        trace = RoutingTrace() if LOGGER.isEnabledFor(logging.DEBUG) else None
        candidate = select_template(context, self._registry, trace)
        if trace is not None:
            LOGGER.debug("Routing for chat %s\n%s", session.chat_id, format_routing_trace(trace))
        if candidate is not None:
            LOGGER.info(
                "Template %s (rule %s, score %d) for chat %s",
                candidate.template.code,
                candidate.rule_id,
                candidate.score,
                session.chat_id,
            )
        request = HintRequest(
            task=record.result.task,
            items=record.result.items,
            level=level,
            mode=hint_mode(level),
            applied_policy=record.result.hint_policy,
            locale=self._pipeline.locale,
            previous_hints=tuple(previous),
            template=profile_core(candidate),
        )
        result = await self._call("hint", session, self._llm.hint, request)
        try:
            self._cache.upsert_hint(fingerprint, session.engine, level, result)
        except Exception:
            # The student still gets the hint; the next request for this level regenerates it.
            LOGGER.exception("Failed to cache hint L%d for chat %s", level, session.chat_id)
        return result

    # --- solution checking ----------------------------------------------------------

    async def ocr(self, session: ChatSession, page: PageImage) -> OCRResult:
        request = OCRRequest(
            image=encode_images([page])[0],
            mime=page.mime,
            locale=self._pipeline.locale,
        )
        return await self._call("ocr", session, self._llm.ocr, request)

    async def normalize(self, session: ChatSession, record: ParseRecord, answer: str) -> NormalizeResult:
        request = NormalizeRequest(
            task=record.result.task,
            raw_task_text=record.raw_task_text,
            raw_answer_text=answer,
            locale=self._pipeline.locale,
        )
        return await self._call("normalize", session, self._llm.normalize, request)

    async def check(self, session: ChatSession, record: ParseRecord, answer: str) -> CheckResult:
        request = CheckRequest(
            task=record.result.task,
            items=record.result.items,
            raw_task_text=record.raw_task_text,
            normalized_answer=answer,
            student=StudentProfile(
                grade=session.grade or record.grade,
                subject=record.subject,
                locale=self._pipeline.locale,
            ),
        )
        return await self._call("check", session, self._llm.check_solution, request)

    async def analogue(self, session: ChatSession, record: ParseRecord, reason: str) -> AnalogueResult:
        request = AnalogueRequest(
            subject=record.subject,
            task_type=record.task_type,
            combined_subpoints=record.combined_subpoints,
            reason=reason,
            locale=self._pipeline.locale,
            grade=session.grade or record.grade,
            raw_task_text=record.raw_task_text,
        )
        return await self._call("analogue", session, self._llm.analogue_solution, request)
