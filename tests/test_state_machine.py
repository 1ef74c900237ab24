from __future__ import annotations

from core.events import EventKind, InboundEvent, PageImage
from core.state_machine import (
    CALLBACK_TARGETS,
    FRIENDLY_NAMES,
    SOLUTION_STATES,
    TRANSITIONS,
    ConversationState as S,
    allowed_next,
    can_transition,
    infer_next_state,
    parse_grade,
)


def _photo() -> InboundEvent:
    return InboundEvent(chat_id=1, kind=EventKind.PHOTO, images=(PageImage(b"img"),))


def _text(text: str) -> InboundEvent:
    return InboundEvent(chat_id=1, kind=EventKind.TEXT, text=text)


def _button(data: str) -> InboundEvent:
    return InboundEvent(chat_id=1, kind=EventKind.CALLBACK, callback_data=data)


def _command(name: str) -> InboundEvent:
    return InboundEvent(chat_id=1, kind=EventKind.COMMAND, command=name)


def test_can_transition_matches_table_for_every_pair() -> None:
    for current in S:
        for proposed in S:
            assert can_transition(current, proposed) == (proposed in TRANSITIONS.get(current, frozenset()))


def test_every_state_has_successors_and_a_name() -> None:
    for state in S:
        assert TRANSITIONS[state], state
        assert FRIENDLY_NAMES[state]


def test_report_reachable_from_every_state_except_report() -> None:
    for state in S:
        if state is S.REPORT:
            continue
        assert can_transition(state, S.REPORT), state


def test_processing_states_can_be_left_for_a_new_task() -> None:
    for state in S:
        if state in (S.REPORT, S.AWAIT_GRADE):
            continue
        assert can_transition(state, S.AWAITING_TASK), state


def test_main_pipeline_path_is_legal() -> None:
    path = [
        S.AWAIT_GRADE,
        S.AWAITING_TASK,
        S.COLLECTING_PAGES,
        S.DETECT,
        S.PARSE,
        S.CONFIRM,
        S.HINTS,
        S.AWAIT_SOLUTION,
        S.OCR,
        S.NORMALIZE,
        S.CHECK,
        S.INCORRECT,
        S.ANALOGUE,
        S.AWAITING_TASK,
    ]
    for current, proposed in zip(path, path[1:]):
        assert can_transition(current, proposed), (current, proposed)


def test_photo_is_not_accepted_before_grade() -> None:
    assert not can_transition(S.AWAIT_GRADE, S.COLLECTING_PAGES)


def test_allowed_next_follows_enum_order() -> None:
    successors = allowed_next(S.AWAITING_TASK)

    assert successors == [S.AWAIT_GRADE, S.AWAITING_TASK, S.COLLECTING_PAGES, S.REPORT]


def test_infer_photo_depends_on_solution_states() -> None:
    assert infer_next_state(_photo(), S.HINTS) == (S.COLLECTING_PAGES, True)
    for state in SOLUTION_STATES:
        assert infer_next_state(_photo(), state) == (S.OCR, True)


def test_infer_callbacks() -> None:
    for data, target in CALLBACK_TARGETS.items():
        assert infer_next_state(_button(data), S.HINTS) == (target, True)
    assert infer_next_state(_button("grade3"), S.AWAIT_GRADE) == (S.AWAITING_TASK, True)
    assert infer_next_state(_button("unknown"), S.HINTS) == (S.HINTS, False)


def test_infer_commands() -> None:
    assert infer_next_state(_command("start"), S.HINTS) == (S.AWAITING_TASK, True)
    assert infer_next_state(_command("health"), S.CHECK) == (S.CHECK, True)
    assert infer_next_state(_command("help"), S.CHECK) == (S.CHECK, False)


def test_infer_text_branches() -> None:
    assert infer_next_state(_text("5"), S.AWAIT_GRADE) == (S.AWAITING_TASK, True)
    assert infer_next_state(_text("пятый"), S.AWAIT_GRADE) == (S.AWAIT_GRADE, False)
    assert infer_next_state(_text("2"), S.ASK_CHOICE, pending_choice=True) == (S.ANALYZE_CHOICE, True)
    assert infer_next_state(_text("2"), S.ASK_CHOICE) == (S.ASK_CHOICE, False)
    assert infer_next_state(_text("x = 7"), S.AWAIT_SOLUTION) == (S.NORMALIZE, True)
    assert infer_next_state(_text("исправленный текст"), S.CONFIRM, pending_parse=True) == (S.HINTS, True)
    assert infer_next_state(_text("исправленный текст"), S.CONFIRM) == (S.CONFIRM, False)


def test_stray_text_while_awaiting_a_photo_has_no_proposal() -> None:
    assert infer_next_state(_text("привет"), S.AWAITING_TASK) == (S.AWAITING_TASK, False)


def test_parse_grade() -> None:
    assert parse_grade("7") == 7
    assert parse_grade(" 11 класс ") == 11
    assert parse_grade("0") is None
    assert parse_grade("12") is None
    assert parse_grade("") is None
    assert parse_grade("2024") is None
