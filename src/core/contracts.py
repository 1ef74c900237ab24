"""Typed request/response contracts for the LLM proxy stages.

Every stage payload is decoded into one of these dataclasses right at the
adapter boundary, so the rest of the core never passes untyped dicts around.
Decoding is lenient: missing or malformed fields fall back to empty values
and the orchestrator degrades to generic phrasing instead of failing.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Optional

ANALOGUE_AFTER_HINTS = "after_3_hints"
ANALOGUE_AFTER_INCORRECT = "after_incorrect"


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _dicts(value: Any) -> list[dict]:
    if not isinstance(value, (list, tuple)):
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def _mapping(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _hint_level(value: Any) -> int:
    """Accept both ``"L2"`` and ``2`` level encodings."""

    if isinstance(value, str) and value.upper().startswith("L"):
        value = value[1:]
    return _int(value)


class _Payload:
    def to_payload(self) -> dict:
        return asdict(self)


# --- parse ------------------------------------------------------------------


@dataclass(frozen=True)
class VisualFact(_Payload):
    kind: str
    value: str = ""


@dataclass(frozen=True)
class PedKeys(_Payload):
    task_type: str = ""
    format: str = ""
    template_id: str = ""


@dataclass(frozen=True)
class HintPolicy(_Payload):
    max_hints: int = 3
    default_visible: int = 1
    h3_reason: str = "none"


@dataclass(frozen=True)
class ParseItem(_Payload):
    item_id: str
    item_text_clean: str
    ped_keys: PedKeys = field(default_factory=PedKeys)
    hint_policy: HintPolicy = field(default_factory=HintPolicy)

    @classmethod
    def from_payload(cls, payload: dict) -> "ParseItem":
        ped = _mapping(payload.get("ped_keys"))
        policy = _mapping(payload.get("hint_policy"))
        return cls(
            item_id=_text(payload.get("item_id")),
            item_text_clean=_text(payload.get("item_text_clean")),
            ped_keys=PedKeys(
                task_type=_text(ped.get("task_type")),
                format=_text(ped.get("format")),
                template_id=_text(ped.get("template_id")),
            ),
            hint_policy=HintPolicy(
                max_hints=_int(policy.get("max_hints"), 3) or 3,
                default_visible=_int(policy.get("default_visible"), 1),
                h3_reason=_text(policy.get("h3_reason")) or "none",
            ),
        )


@dataclass(frozen=True)
class ParseTask(_Payload):
    task_id: str = ""
    subject: str = ""
    grade: int = 0
    task_text_clean: str = ""
    visual_facts: tuple[VisualFact, ...] = ()
    combined_subpoints: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> "ParseTask":
        facts = tuple(
            VisualFact(kind=_text(fact.get("kind")), value=_text(fact.get("value")))
            for fact in _dicts(payload.get("visual_facts"))
        )
        return cls(
            task_id=_text(payload.get("task_id")),
            subject=_text(payload.get("subject")).lower(),
            grade=_int(payload.get("grade")),
            task_text_clean=_text(payload.get("task_text_clean") or payload.get("raw_task_text")),
            visual_facts=facts,
            combined_subpoints=bool(payload.get("combined_subpoints", False)),
        )


@dataclass(frozen=True)
class ParseResult(_Payload):
    task: ParseTask
    items: tuple[ParseItem, ...] = ()
    needs_user_confirmation: bool = False
    confirmation_reason: str = ""

    @classmethod
    def from_payload(cls, payload: dict) -> "ParseResult":
        payload = _mapping(payload)
        needs_confirmation = payload.get("needs_user_confirmation")
        if needs_confirmation is None:
            needs_confirmation = payload.get("confirmation_needed", False)
        return cls(
            task=ParseTask.from_payload(_mapping(payload.get("task"))),
            items=tuple(ParseItem.from_payload(item) for item in _dicts(payload.get("items"))),
            needs_user_confirmation=bool(needs_confirmation),
            confirmation_reason=_text(payload.get("confirmation_reason")),
        )

    @property
    def raw_task_text(self) -> str:
        return self.task.task_text_clean

    @property
    def task_type(self) -> str:
        for item in self.items:
            if item.ped_keys.task_type:
                return item.ped_keys.task_type
        return ""

    @property
    def hint_policy(self) -> HintPolicy:
        if self.items:
            return self.items[0].hint_policy
        return HintPolicy()

    def with_task_text(self, text: str) -> "ParseResult":
        """Return a copy whose task text is replaced by a user correction."""

        return replace(
            self,
            task=replace(self.task, task_text_clean=text.strip()),
            needs_user_confirmation=False,
        )


# --- detect -----------------------------------------------------------------


@dataclass(frozen=True)
class DetectedTask(_Payload):
    number: str = ""
    brief: str = ""

    @property
    def label(self) -> str:
        if self.number and self.brief:
            return f"{self.number} — {self.brief}"
        return self.brief or self.number or "Задание"


@dataclass(frozen=True)
class DetectResult(_Payload):
    tasks: tuple[DetectedTask, ...] = ()
    subject_hint: str = ""
    grade_hint: int = 0
    confidence: float = 0.0
    needs_rescan: bool = False
    rescan_reason: str = ""
    inappropriate: bool = False
    has_faces: bool = False
    pii_detected: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> "DetectResult":
        payload = _mapping(payload)
        tasks = []
        has_faces = bool(payload.get("has_faces", False))
        pii = bool(payload.get("pii_detected", False))
        for task in _dicts(payload.get("tasks")):
            brief = _text(task.get("title_raw"))
            blocks = _dicts(task.get("blocks"))
            if not brief and blocks:
                brief = _text(_text(blocks[0].get("block_raw")).split("\n", 1)[0])
            tasks.append(DetectedTask(number=_text(task.get("original_number")), brief=brief))
            has_faces = has_faces or bool(task.get("has_faces", False))
            pii = pii or bool(task.get("pii_detected", False))
        return cls(
            tasks=tuple(tasks),
            subject_hint=_text(payload.get("subject_hint")).lower(),
            grade_hint=_int(payload.get("grade_hint")),
            confidence=_float(payload.get("confidence")),
            needs_rescan=bool(payload.get("needs_rescan", False)),
            rescan_reason=_text(payload.get("rescan_reason")),
            inappropriate=bool(payload.get("inappropriate", False)),
            has_faces=has_faces,
            pii_detected=pii,
        )

    @property
    def subject_confidence(self) -> str:
        if self.confidence < 0.7:
            return "low"
        if self.confidence < 0.9:
            return "medium"
        return "high"


# --- hint -------------------------------------------------------------------


@dataclass(frozen=True)
class HintText(_Payload):
    level: int
    hint_text: str


@dataclass(frozen=True)
class HintItem(_Payload):
    item_id: str = ""
    hints: tuple[HintText, ...] = ()


@dataclass(frozen=True)
class HintResult(_Payload):
    items: tuple[HintItem, ...] = ()
    level: int = 0
    hint_text: str = ""

    @classmethod
    def from_payload(cls, payload: dict) -> "HintResult":
        payload = _mapping(payload)
        items = []
        for item in _dicts(payload.get("items")):
            hints = tuple(
                HintText(level=_hint_level(hint.get("level")), hint_text=_text(hint.get("hint_text")))
                for hint in _dicts(item.get("hints"))
            )
            items.append(HintItem(item_id=_text(item.get("item_id")), hints=hints))
        return cls(
            items=tuple(items),
            level=_hint_level(payload.get("level")),
            hint_text=_text(payload.get("hint_text")),
        )

    def texts_for_level(self, level: int) -> list[str]:
        texts = [
            hint.hint_text
            for item in self.items
            for hint in item.hints
            if hint.level == level and hint.hint_text
        ]
        if not texts and self.hint_text and self.level in (0, level):
            texts.append(self.hint_text)
        return texts


# --- solution checking --------------------------------------------------------


@dataclass(frozen=True)
class OCRResult(_Payload):
    raw_answer_text: str = ""
    confidence: float = 0.0

    @classmethod
    def from_payload(cls, payload: dict) -> "OCRResult":
        payload = _mapping(payload)
        return cls(
            raw_answer_text=_text(payload.get("raw_answer_text")),
            confidence=_float(payload.get("confidence")),
        )


@dataclass(frozen=True)
class NormalizeResult(_Payload):
    normalized_answer: str = ""
    solution_shape: str = ""
    needs_clarification: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> "NormalizeResult":
        payload = _mapping(payload)
        return cls(
            normalized_answer=_text(payload.get("normalized_answer") or payload.get("value")),
            solution_shape=_text(payload.get("solution_shape") or payload.get("shape")),
            needs_clarification=bool(payload.get("needs_clarification", False)),
        )


@dataclass(frozen=True)
class CheckResult(_Payload):
    is_correct: Optional[bool] = None
    feedback: str = ""
    confidence: float = 0.0

    @classmethod
    def from_payload(cls, payload: dict) -> "CheckResult":
        payload = _mapping(payload)
        verdict = payload.get("is_correct")
        return cls(
            is_correct=verdict if isinstance(verdict, bool) else None,
            feedback=_text(payload.get("feedback")),
            confidence=_float(payload.get("confidence")),
        )


@dataclass(frozen=True)
class AnalogueResult(_Payload):
    example_task: str = ""
    solution_steps: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: dict) -> "AnalogueResult":
        payload = _mapping(payload)
        steps = payload.get("solution_steps")
        if not isinstance(steps, (list, tuple)):
            steps = []
        return cls(
            example_task=_text(payload.get("example_task")),
            solution_steps=tuple(_text(step) for step in steps if _text(step)),
        )


# --- requests -----------------------------------------------------------------


@dataclass(frozen=True)
class DetectRequest(_Payload):
    images: tuple[str, ...]
    mime: str
    locale: str
    grade_hint: int = 0
    max_tasks: int = 1


@dataclass(frozen=True)
class ParseRequest(_Payload):
    images: tuple[str, ...]
    task_id: str
    locale: str
    subject_candidate: str = ""
    subject_confidence: str = "low"
    grade: int = 0
    selected_task_index: int = -1
    selected_task_brief: str = ""


@dataclass(frozen=True)
class HintRequest(_Payload):
    task: ParseTask
    items: tuple[ParseItem, ...]
    level: int
    mode: str
    applied_policy: HintPolicy
    locale: str
    previous_hints: tuple[str, ...] = ()
    template: Optional[dict] = None


@dataclass(frozen=True)
class OCRRequest(_Payload):
    image: str
    mime: str
    locale: str


@dataclass(frozen=True)
class NormalizeRequest(_Payload):
    task: ParseTask
    raw_task_text: str
    raw_answer_text: str
    locale: str


@dataclass(frozen=True)
class StudentProfile(_Payload):
    grade: int
    subject: str
    locale: str


@dataclass(frozen=True)
class CheckRequest(_Payload):
    task: ParseTask
    items: tuple[ParseItem, ...]
    raw_task_text: str
    normalized_answer: str
    student: StudentProfile


@dataclass(frozen=True)
class AnalogueRequest(_Payload):
    subject: str
    task_type: str
    combined_subpoints: bool
    reason: str
    locale: str
    grade: int
    raw_task_text: str
