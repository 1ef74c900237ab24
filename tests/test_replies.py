from __future__ import annotations

from core import replies
from core.contracts import AnalogueResult, DetectedTask
from core.state_machine import ConversationState as S


def _payloads(keyboard) -> list[str]:
    return [button.payload for row in keyboard for button in row]


def test_denied_text_names_states_and_successors() -> None:
    text = replies.denied_text(S.AWAIT_GRADE, S.COLLECTING_PAGES)

    assert text.startswith("Нельзя выполнить действие сейчас: выбор класса → приём фото задания.")
    assert text.endswith("Сейчас можно: ожидание задания, сообщение об ошибке.")


def test_parse_choice_accepts_numbers_in_range_only() -> None:
    assert replies.parse_choice("2", 3) == 1
    assert replies.parse_choice("номер 3", 3) == 2
    assert replies.parse_choice("4", 3) == -1
    assert replies.parse_choice("0", 3) == -1
    assert replies.parse_choice("первое", 3) == -1


def test_actions_keyboard_switches_to_analogue_after_last_hint() -> None:
    assert _payloads(replies.actions_keyboard(1)) == ["hint_next", "ready_solution", "new_task", "report"]
    assert _payloads(replies.actions_keyboard(2))[:2] == ["hint_next", "dont_like_hint"]
    assert _payloads(replies.actions_keyboard(4, 3))[0] == "analogue_solution"
    assert _payloads(replies.grade_keyboard()) == ["grade1", "grade2", "grade3", "grade4"]


def test_choice_text_lists_labels() -> None:
    text = replies.choice_text([DetectedTask(number="5", brief="Реши уравнение"), DetectedTask(brief="Вычисли")])

    assert "1. 5 — Реши уравнение" in text
    assert "2. Вычисли" in text


def test_hint_text_joins_items_and_handles_missing() -> None:
    assert replies.hint_text(2, ["Первый пункт", "", "Второй пункт"]) == (
        "💡 Подсказка 2:\n\nПервый пункт\n\nВторой пункт"
    )
    assert replies.hint_text(1, []) == replies.HINT_MISSING


def test_analogue_text_numbers_steps() -> None:
    result = AnalogueResult(example_task="Велосипедист едет 12 км/ч.", solution_steps=("s = v * t", "Ответ: 36 км"))

    text = replies.analogue_text(result)

    assert text.startswith("📘 Похожее задание:\n\nВелосипедист едет 12 км/ч.")
    assert "1. s = v * t\n2. Ответ: 36 км" in text
    assert replies.analogue_text(AnalogueResult()) == replies.ANALOGUE_EMPTY


def test_failure_and_feedback_texts() -> None:
    assert replies.stage_failed_text("hint").startswith("Не удалось получить подсказку.")
    assert replies.stage_failed_text("unknown").startswith("Что-то пошло не так.")
    assert "\n\nПроверь вычитание." in replies.incorrect_text("Проверь вычитание.")
    assert replies.rescan_text("") == replies.NEEDS_RESCAN.format(reason="")
