"""Conversation state machine (core domain).

The transition table is the single source of truth for which action a chat
may take next. Inference never talks to external services: it only looks at
the inbound event shape and a couple of session flags.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from core.events import EventKind, InboundEvent


class ConversationState(str, Enum):
    AWAIT_GRADE = "await_grade"
    AWAITING_TASK = "awaiting_task"
    COLLECTING_PAGES = "collecting_pages"
    DETECT = "detect"
    NEEDS_RESCAN = "needs_rescan"
    NOT_A_TASK = "not_a_task"
    INAPPROPRIATE = "inappropriate"
    ASK_CHOICE = "ask_choice"
    ANALYZE_CHOICE = "analyze_choice"
    PARSE = "parse"
    CONFIRM = "confirm"
    HINTS = "hints"
    AWAIT_SOLUTION = "await_solution"
    OCR = "ocr"
    NORMALIZE = "normalize"
    CHECK = "check"
    CORRECT = "correct"
    INCORRECT = "incorrect"
    UNCERTAIN = "uncertain"
    ANALOGUE = "analogue"
    REPORT = "report"


S = ConversationState

TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
    S.AWAIT_GRADE: frozenset({S.AWAITING_TASK, S.AWAIT_GRADE, S.REPORT}),
    S.AWAITING_TASK: frozenset({S.COLLECTING_PAGES, S.AWAITING_TASK, S.AWAIT_GRADE, S.REPORT}),
    S.COLLECTING_PAGES: frozenset({S.DETECT, S.AWAITING_TASK, S.REPORT}),
    S.DETECT: frozenset(
        {
            S.PARSE,
            S.ASK_CHOICE,
            S.NEEDS_RESCAN,
            S.NOT_A_TASK,
            S.INAPPROPRIATE,
            S.COLLECTING_PAGES,
            S.AWAITING_TASK,
            S.REPORT,
        }
    ),
    S.NEEDS_RESCAN: frozenset({S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}),
    S.NOT_A_TASK: frozenset({S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}),
    S.INAPPROPRIATE: frozenset({S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}),
    S.ASK_CHOICE: frozenset({S.ANALYZE_CHOICE, S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}),
    S.ANALYZE_CHOICE: frozenset({S.PARSE, S.ANALYZE_CHOICE, S.AWAITING_TASK, S.REPORT}),
    S.PARSE: frozenset(
        {S.CONFIRM, S.HINTS, S.AWAIT_SOLUTION, S.NEEDS_RESCAN, S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}
    ),
    S.CONFIRM: frozenset(
        {S.HINTS, S.CONFIRM, S.AWAIT_SOLUTION, S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}
    ),
    S.HINTS: frozenset(
        {S.HINTS, S.CONFIRM, S.AWAIT_SOLUTION, S.ANALOGUE, S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}
    ),
    S.AWAIT_SOLUTION: frozenset({S.OCR, S.NORMALIZE, S.HINTS, S.CONFIRM, S.AWAITING_TASK, S.REPORT}),
    S.OCR: frozenset({S.NORMALIZE, S.OCR, S.AWAIT_SOLUTION, S.AWAITING_TASK, S.REPORT}),
    S.NORMALIZE: frozenset({S.CHECK, S.OCR, S.NORMALIZE, S.AWAIT_SOLUTION, S.AWAITING_TASK, S.REPORT}),
    S.CHECK: frozenset(
        {S.CORRECT, S.INCORRECT, S.UNCERTAIN, S.OCR, S.NORMALIZE, S.AWAITING_TASK, S.REPORT}
    ),
    S.CORRECT: frozenset({S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}),
    S.INCORRECT: frozenset({S.ANALOGUE, S.AWAIT_SOLUTION, S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}),
    S.UNCERTAIN: frozenset({S.ANALOGUE, S.AWAIT_SOLUTION, S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}),
    S.ANALOGUE: frozenset(
        {S.ANALOGUE, S.AWAIT_SOLUTION, S.COLLECTING_PAGES, S.AWAITING_TASK, S.REPORT}
    ),
    S.REPORT: frozenset({S.AWAITING_TASK, S.COLLECTING_PAGES, S.HINTS, S.AWAIT_SOLUTION, S.ANALOGUE}),
}

# States in which an inbound photo or text is the student's answer.
SOLUTION_STATES = frozenset({S.AWAIT_SOLUTION, S.OCR, S.NORMALIZE, S.CHECK})

FRIENDLY_NAMES: dict[ConversationState, str] = {
    S.AWAIT_GRADE: "выбор класса",
    S.AWAITING_TASK: "ожидание задания",
    S.COLLECTING_PAGES: "приём фото задания",
    S.DETECT: "распознавание задания",
    S.NEEDS_RESCAN: "нужно переснять фото",
    S.NOT_A_TASK: "на фото нет задания",
    S.INAPPROPRIATE: "недопустимое фото",
    S.ASK_CHOICE: "выбор задания",
    S.ANALYZE_CHOICE: "разбор выбора",
    S.PARSE: "разбор задания",
    S.CONFIRM: "подтверждение задания",
    S.HINTS: "подсказки",
    S.AWAIT_SOLUTION: "ожидание решения",
    S.OCR: "распознавание решения",
    S.NORMALIZE: "разбор ответа",
    S.CHECK: "проверка решения",
    S.CORRECT: "решение верно",
    S.INCORRECT: "решение с ошибкой",
    S.UNCERTAIN: "проверка не уверена",
    S.ANALOGUE: "похожее задание",
    S.REPORT: "сообщение об ошибке",
}

# Button payloads the inline keyboards emit.
CALLBACK_TARGETS: dict[str, ConversationState] = {
    "parse_yes": S.HINTS,
    "parse_no": S.CONFIRM,
    "hint_next": S.HINTS,
    "dont_like_hint": S.HINTS,
    "ready_solution": S.AWAIT_SOLUTION,
    "analogue": S.ANALOGUE,
    "analogue_solution": S.ANALOGUE,
    "new_task": S.AWAITING_TASK,
    "report": S.REPORT,
}


def can_transition(current: ConversationState, proposed: ConversationState) -> bool:
    """Return True when ``proposed`` is in the successor set of ``current``."""

    return proposed in TRANSITIONS.get(current, frozenset())


def allowed_next(current: ConversationState) -> list[ConversationState]:
    """Successors of ``current`` in declaration order of the enum."""

    successors = TRANSITIONS.get(current, frozenset())
    return [state for state in ConversationState if state in successors]


def parse_grade(text: str) -> Optional[int]:
    """Return a school grade 1..11 from free text, or None."""

    digits = "".join(ch for ch in text.strip() if ch.isdigit())
    if not digits or len(digits) > 2:
        return None
    grade = int(digits)
    if 1 <= grade <= 11:
        return grade
    return None


def infer_next_state(
    event: InboundEvent,
    current: ConversationState,
    *,
    pending_choice: bool = False,
    pending_parse: bool = False,
) -> tuple[ConversationState, bool]:
    """Derive the successor proposed by an inbound event.

    Returns ``(proposed, True)`` when the event implies a transition, and
    ``(current, False)`` when the event is irrelevant to the current state.
    """

    if event.kind is EventKind.COMMAND:
        if event.command == "start":
            return S.AWAITING_TASK, True
        if event.command in ("health", "engine"):
            return current, True
        return current, False

    if event.kind is EventKind.CALLBACK:
        data = event.callback_data
        if data.startswith("grade"):
            return S.AWAITING_TASK, True
        if data in CALLBACK_TARGETS:
            return CALLBACK_TARGETS[data], True
        return current, False

    if event.kind is EventKind.PHOTO:
        if current in SOLUTION_STATES:
            return S.OCR, True
        return S.COLLECTING_PAGES, True

    if event.kind is EventKind.TEXT:
        if current is S.AWAIT_GRADE and parse_grade(event.text) is not None:
            return S.AWAITING_TASK, True
        if pending_choice and current in (S.ASK_CHOICE, S.ANALYZE_CHOICE):
            return S.ANALYZE_CHOICE, True
        if current in SOLUTION_STATES:
            return S.NORMALIZE, True
        if current is S.CONFIRM and pending_parse:
            return S.HINTS, True
    return current, False
