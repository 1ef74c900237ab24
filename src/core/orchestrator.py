"""Per-event conversation driver.

This module is integration-agnostic. It only relies on ports for storage,
the LLM proxy and outgoing messages, so the Telegram adapter is one frontend
among many.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from core import replies
from core.cache import ACCEPT_USER_FIX, ACCEPT_USER_YES
from core.config import PipelineConfig
from core.contracts import ANALOGUE_AFTER_HINTS, ANALOGUE_AFTER_INCORRECT
from core.dedup import compute_fingerprint
from core.errors import ExternalCallError, IllegalTransitionError
from core.events import EventKind, InboundEvent
from core.models import ChatSession, HintProgress, Keyboard, ParseRecord
from core.ports import MessengerPort, StoragePort
from core.sessions import SessionStore
from core.stages import StageRunner
from core.state_machine import (
    SOLUTION_STATES,
    ConversationState,
    allowed_next,
    can_transition,
    infer_next_state,
    parse_grade,
)
from core.telemetry import DIRECTION_BUTTON, DIRECTION_IN, DIRECTION_OUT, Telemetry

LOGGER = logging.getLogger(__name__)

S = ConversationState


class SessionOrchestrator:
    """Gates every inbound event through the state machine and runs its stage."""

    def __init__(
        self,
        sessions: SessionStore,
        stages: StageRunner,
        messenger: MessengerPort,
        telemetry: Telemetry,
        storage: StoragePort,
        config: PipelineConfig,
        engines: Iterable[str] = (),
        admin_chat_ids: Sequence[int] = (),
    ) -> None:
        self._sessions = sessions
        self._stages = stages
        self._messenger = messenger
        self._telemetry = telemetry
        self._storage = storage
        self._config = config
        self._engines = tuple(engines) or (config.default_engine,)
        self._admin_chat_ids = tuple(admin_chat_ids)

    async def handle(self, event: InboundEvent) -> None:
        """Process one inbound event for one chat."""

        async with self._sessions.locked(event.chat_id) as session:
            if not session.engine:
                session.engine = self._config.default_engine
            self._record_inbound(session, event)

            current = session.state
            proposed, has_proposal = infer_next_state(
                event,
                current,
                pending_choice=bool(session.pending_choice),
                pending_parse=session.pending_parse is not None,
            )
            if not has_proposal:
                await self._nudge(session, event)
                return

            if proposed != current and not can_transition(current, proposed):
                LOGGER.info("Denied %s -> %s for chat %s", current.value, proposed.value, session.chat_id)
                await self._deny(session, proposed)
                return

            # The new state is committed before the stage runs; a failing stage
            # leaves the chat there and the user retries from the same state.
            session.state = proposed
            self._sessions.save(session)
            try:
                await self._dispatch(session, event, previous=current)
            except ExternalCallError as exc:
                await self._reply(session, replies.stage_failed_text(exc.stage), replies.recovery_keyboard())
            except Exception:
                LOGGER.exception("Event handling failed for chat %s", session.chat_id)
                await self._reply(session, replies.stage_failed_text(""), replies.recovery_keyboard())
            finally:
                self._sessions.save(session)

    # --- gating ----------------------------------------------------------------

    def _advance(self, session: ChatSession, target: ConversationState) -> None:
        if target != session.state and not can_transition(session.state, target):
            raise IllegalTransitionError(session.state, target, allowed_next(session.state))
        session.state = target

    async def _deny(self, session: ChatSession, proposed: ConversationState) -> None:
        keyboard: Keyboard = replies.report_keyboard()
        if session.state is S.AWAIT_GRADE:
            keyboard = replies.grade_keyboard() + keyboard
        await self._reply(session, replies.denied_text(session.state, proposed), keyboard)

    async def _nudge(self, session: ChatSession, event: InboundEvent) -> None:
        if event.kind is EventKind.COMMAND:
            await self._reply(session, replies.UNKNOWN_COMMAND)
        elif session.state is S.AWAIT_GRADE:
            await self._reply(session, replies.ASK_GRADE, replies.grade_keyboard())
        elif session.state in (S.AWAITING_TASK, S.COLLECTING_PAGES, S.NOT_A_TASK, S.NEEDS_RESCAN):
            await self._reply(session, replies.AWAITING_TASK_NUDGE)
        elif session.state is S.CONFIRM:
            await self._reply(session, replies.FIX_PARSE, replies.confirm_keyboard())
        elif session.state in SOLUTION_STATES:
            await self._reply(session, replies.AWAITING_SOLUTION_NUDGE, replies.report_keyboard())
        else:
            await self._reply(session, replies.UNKNOWN_INPUT, replies.recovery_keyboard())

    # --- dispatch --------------------------------------------------------------

    async def _dispatch(self, session: ChatSession, event: InboundEvent, previous: ConversationState) -> None:
        if event.kind is EventKind.COMMAND:
            await self._on_command(session, event)
        elif event.kind is EventKind.CALLBACK:
            await self._on_callback(session, event, previous)
        elif event.kind is EventKind.PHOTO:
            if previous in SOLUTION_STATES:
                await self._on_solution_photo(session, event)
            else:
                await self._on_task_photo(session, event)
        elif session.state is S.AWAITING_TASK and previous is S.AWAIT_GRADE:
            await self._set_grade(session, parse_grade(event.text) or 0)
        elif session.state is S.ANALYZE_CHOICE:
            await self._on_choice(session, event.text)
        elif session.state is S.NORMALIZE:
            await self._check_answer(session, event.text)
        elif session.state is S.HINTS and previous is S.CONFIRM:
            await self._on_parse_fix(session, event.text)

    async def _on_command(self, session: ChatSession, event: InboundEvent) -> None:
        if event.command == "health":
            await self._reply(session, replies.HEALTH_OK)
        elif event.command == "engine":
            await self._set_engine(session, event.text.strip().lower())
        else:
            session.start_task()
            await self._reply(session, replies.WELCOME)
            await self._ask_grade_if_missing(session)

    async def _on_callback(self, session: ChatSession, event: InboundEvent, previous: ConversationState) -> None:
        data = event.callback_data
        if data.startswith("grade"):
            await self._set_grade(session, parse_grade(data[len("grade"):]) or 0)
        elif data == "new_task":
            session.start_task()
            if not await self._ask_grade_if_missing(session):
                await self._reply(session, replies.AWAITING_TASK_NUDGE)
        elif data == "parse_yes":
            await self._on_parse_yes(session)
        elif data == "parse_no":
            await self._reply(session, replies.FIX_PARSE)
        elif data == "hint_next":
            await self._on_hint_next(session)
        elif data == "dont_like_hint":
            await self._reply(session, replies.DONT_LIKE_HINT)
            await self._on_hint_next(session)
        elif data == "ready_solution":
            if await self._require_task(session) is not None:
                await self._reply(session, replies.ASK_SOLUTION)
        elif data in ("analogue", "analogue_solution"):
            reason = ANALOGUE_AFTER_INCORRECT if previous in (S.INCORRECT, S.UNCERTAIN) else ANALOGUE_AFTER_HINTS
            await self._on_analogue(session, reason)
        elif data == "report":
            await self._on_report(session, previous)

    async def _ask_grade_if_missing(self, session: ChatSession) -> bool:
        if session.grade:
            return False
        self._advance(session, S.AWAIT_GRADE)
        await self._reply(session, replies.ASK_GRADE, replies.grade_keyboard())
        return True

    async def _set_grade(self, session: ChatSession, grade: int) -> None:
        if not grade:
            self._advance(session, S.AWAIT_GRADE)
            await self._reply(session, replies.ASK_GRADE, replies.grade_keyboard())
            return
        session.grade = grade
        LOGGER.info("Grade %d saved for chat %s", grade, session.chat_id)
        await self._reply(session, replies.GRADE_SAVED.format(grade=grade))

    async def _set_engine(self, session: ChatSession, engine: str) -> None:
        if engine not in self._engines:
            await self._reply(session, replies.ENGINE_USAGE.format(engines="{" + "|".join(self._engines) + "}"))
            return
        session.engine = engine
        await self._reply(session, replies.ENGINE_SET.format(engine=engine))

    # --- task intake -------------------------------------------------------------

    async def _on_task_photo(self, session: ChatSession, event: InboundEvent) -> None:
        # A fresh task photo always starts a new task.
        session.start_task()
        session.pending_images = event.images
        session.media_group_id = event.media_group_id
        session.fingerprint = compute_fingerprint(event.images)

        self._advance(session, S.DETECT)
        if self._stages.find_accepted(session) is not None:
            LOGGER.info("Known task for chat %s, skipping detect", session.chat_id)
            await self._run_parse(session)
            return

        detect = await self._stages.detect(session, event.images)
        session.detect = detect
        if detect.subject_hint:
            session.subject = detect.subject_hint

        if detect.inappropriate:
            self._advance(session, S.INAPPROPRIATE)
            await self._reply(session, replies.INAPPROPRIATE, replies.recovery_keyboard())
            return
        if detect.needs_rescan:
            self._advance(session, S.NEEDS_RESCAN)
            await self._reply(session, replies.rescan_text(detect.rescan_reason), replies.report_keyboard())
            return
        if not detect.tasks:
            self._advance(session, S.NOT_A_TASK)
            await self._reply(session, replies.NOT_A_TASK, replies.report_keyboard())
            return
        if detect.has_faces or detect.pii_detected:
            await self._reply(session, replies.PRIVACY_WARNING)
        if len(detect.tasks) > 1:
            self._advance(session, S.ASK_CHOICE)
            session.pending_choice = detect.tasks
            await self._reply(session, replies.choice_text(detect.tasks), replies.report_keyboard())
            return
        await self._run_parse(session)

    async def _on_choice(self, session: ChatSession, text: str) -> None:
        tasks = session.pending_choice
        index = replies.parse_choice(text, len(tasks))
        if index < 0:
            await self._reply(session, replies.BAD_CHOICE.format(count=len(tasks)))
            return
        session.pending_choice = ()
        # The same photo yields one parse per selected task.
        session.fingerprint = f"{compute_fingerprint(session.pending_images)}#{index + 1}"
        await self._run_parse(session, choice_index=index, choice_brief=tasks[index].label)

    async def _run_parse(self, session: ChatSession, choice_index: int = -1, choice_brief: str = "") -> None:
        self._advance(session, S.PARSE)
        record, from_cache = await self._stages.parse(
            session,
            session.pending_images,
            detect=session.detect,
            choice_index=choice_index,
            choice_brief=choice_brief,
        )
        session.subject = record.subject or session.subject
        session.task_type = record.task_type

        if from_cache:
            await self._start_hints(session, record)
            return
        if record.needs_user_confirmation:
            self._advance(session, S.CONFIRM)
            session.pending_parse = record
            text = replies.CONFIRM_PARSE.format(text=record.raw_task_text or "…")
            await self._reply(session, text, replies.confirm_keyboard())
            return
        self._stages.accept(session)
        await self._start_hints(session, record)

    async def _on_parse_yes(self, session: ChatSession) -> None:
        record = session.pending_parse
        if record is None:
            # Stale button: the task may already be accepted.
            record = await self._require_task(session)
            if record is not None:
                await self._start_hints(session, record)
            return
        self._stages.accept(session, ACCEPT_USER_YES)
        session.pending_parse = None
        await self._start_hints(session, record)

    async def _on_parse_fix(self, session: ChatSession, text: str) -> None:
        draft = session.pending_parse
        record = self._stages.cache.accept_with_overwrite(draft, draft.result.with_task_text(text), ACCEPT_USER_FIX)
        session.pending_parse = None
        LOGGER.info("Task text corrected by chat %s", session.chat_id)
        await self._start_hints(session, record)

    async def _start_hints(self, session: ChatSession, record: ParseRecord) -> None:
        self._advance(session, S.HINTS)
        session.hint_progress = HintProgress(next_level=1, max_hints=self._config.max_hint_level)
        await self._reply(session, replies.task_text(record.raw_task_text), replies.actions_keyboard(1))

    async def _require_task(self, session: ChatSession) -> Optional[ParseRecord]:
        """Return the accepted task, or steer the chat back when there is none."""

        record = self._stages.find_accepted(session)
        if record is None and session.pending_parse is not None:
            self._advance(session, S.CONFIRM)
            text = replies.CONFIRM_PARSE.format(text=session.pending_parse.raw_task_text or "…")
            await self._reply(session, text, replies.confirm_keyboard())
        elif record is None:
            self._advance(session, S.AWAITING_TASK)
            await self._reply(session, replies.NO_ACCEPTED_TASK, replies.report_keyboard())
        return record

    # --- hints -------------------------------------------------------------------

    async def _on_hint_next(self, session: ChatSession) -> None:
        record = await self._require_task(session)
        if record is None:
            return
        progress = session.hint_progress or HintProgress(max_hints=self._config.max_hint_level)
        session.hint_progress = progress
        level = progress.next_level
        if level > progress.max_hints:
            await self._reply(session, replies.HINTS_EXHAUSTED, replies.actions_keyboard(level, progress.max_hints))
            return

        result = await self._stages.hint(session, record, level)
        progress.next_level = level + 1
        await self._reply(
            session,
            replies.hint_text(level, result.texts_for_level(level)),
            replies.actions_keyboard(progress.next_level, progress.max_hints),
        )

    # --- solution checking ---------------------------------------------------------

    async def _on_solution_photo(self, session: ChatSession, event: InboundEvent) -> None:
        record = await self._require_task(session)
        if record is None:
            return
        ocr = await self._stages.ocr(session, event.images[0])
        if not ocr.raw_answer_text:
            self._advance(session, S.AWAIT_SOLUTION)
            await self._reply(session, replies.ANSWER_EMPTY)
            return
        self._advance(session, S.NORMALIZE)
        await self._check_answer(session, ocr.raw_answer_text, record)

    async def _check_answer(self, session: ChatSession, answer: str, record: Optional[ParseRecord] = None) -> None:
        if record is None:
            record = await self._require_task(session)
            if record is None:
                return
        if not answer.strip():
            self._advance(session, S.AWAIT_SOLUTION)
            await self._reply(session, replies.ANSWER_EMPTY)
            return

        normalized = await self._stages.normalize(session, record, answer)
        self._advance(session, S.CHECK)
        verdict = await self._stages.check(session, record, normalized.normalized_answer or answer)

        if verdict.is_correct is True:
            self._advance(session, S.CORRECT)
            await self._reply(session, replies.ANSWER_CORRECT, replies.correct_keyboard())
        elif verdict.is_correct is False:
            self._advance(session, S.INCORRECT)
            await self._reply(session, replies.incorrect_text(verdict.feedback), replies.incorrect_keyboard())
        else:
            self._advance(session, S.UNCERTAIN)
            await self._reply(session, replies.ANSWER_UNCERTAIN, replies.incorrect_keyboard())

    async def _on_analogue(self, session: ChatSession, reason: str) -> None:
        record = await self._require_task(session)
        if record is None:
            return
        result = await self._stages.analogue(session, record, reason)
        keyboard = ((replies.READY_BUTTON,), (replies.NEW_TASK_BUTTON,), (replies.REPORT_BUTTON,))
        await self._reply(session, replies.analogue_text(result), keyboard)

    # --- report ----------------------------------------------------------------------

    async def _on_report(self, session: ChatSession, previous: ConversationState) -> None:
        events = self._storage.list_timeline_events(session.chat_id)
        lines = [
            "Отчёт по сессии",
            f"chatID={session.chat_id}",
            f"session={session.session_id}",
            f"state={previous.value}",
            f"steps={len(events)}",
        ]
        for event in events[-15:]:
            status = "ok" if event.ok else f"error: {event.error}"
            lines.append(f"- {event.direction} {event.event_type} {status}")
        if self._admin_chat_ids:
            await self._messenger.send_to_admins("\n".join(lines), self._admin_chat_ids)
        else:
            LOGGER.warning("Report from chat %s with no admin chats configured", session.chat_id)
        await self._reply(session, replies.REPORT_SENT, replies.recovery_keyboard())
        if can_transition(S.REPORT, previous):
            session.state = previous

    # --- output ----------------------------------------------------------------------

    async def _reply(self, session: ChatSession, text: str, buttons: Keyboard = ()) -> None:
        message_id = await self._messenger.send(session.chat_id, text, buttons)
        self._telemetry.message(session, DIRECTION_OUT, "message", text=text, message_id=message_id)

    def _record_inbound(self, session: ChatSession, event: InboundEvent) -> None:
        direction = DIRECTION_BUTTON if event.kind is EventKind.CALLBACK else DIRECTION_IN
        text = event.callback_data or event.text
        if event.kind is EventKind.COMMAND:
            text = f"/{event.command} {event.text}".strip()
        elif event.kind is EventKind.PHOTO:
            text = f"<{len(event.images)} photo(s)>"
        self._telemetry.message(session, direction, event.kind.value, text=text, message_id=event.message_id)
