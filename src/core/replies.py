"""User-facing texts and inline keyboards.

Every message the bot sends is built here so the orchestrator only decides
*which* reply to send. Texts are Russian: the audience is Russian-speaking
school students.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from core.contracts import AnalogueResult, DetectedTask
from core.models import Button, Keyboard
from core.state_machine import FRIENDLY_NAMES, ConversationState, allowed_next

REPORT_BUTTON = Button("Сообщить об ошибке", "report")
NEW_TASK_BUTTON = Button("Перейти к новой задаче", "new_task")
READY_BUTTON = Button("Готов дать решение", "ready_solution")
HINT_BUTTON = Button("Показать подсказку", "hint_next")
DONT_LIKE_BUTTON = Button("Не нравится подсказка", "dont_like_hint")
ANALOGUE_BUTTON = Button("Похожее задание", "analogue_solution")

WELCOME = "👋 Ура, мы начинаем!\n\nСкидывай своё задание — и разберёмся вместе! 🤓"
ASK_GRADE = "В каком ты классе? Выбери кнопку или напиши число."
GRADE_SAVED = "Записал: {grade} класс. Пришли фото задания."
HEALTH_OK = "✅ OK"
AWAITING_TASK_NUDGE = "Я жду фото новой задачи. Пожалуйста, пришли фото."
AWAITING_SOLUTION_NUDGE = "Я жду от тебя решение: пришли фото или напиши ответ текстом."
UNKNOWN_INPUT = "Не смог понять, что ты от меня хочешь."
UNKNOWN_COMMAND = "Неизвестная команда. Я знаю команды /start и /health."
ENGINE_USAGE = "Использование: /engine {engines}"
ENGINE_SET = "✅ Движок: {engine}"

NOT_A_TASK = "Я не нашёл на фото учебного задания. Пришли, пожалуйста, фото задачи."
NEEDS_RESCAN = "Фото получилось нечитаемым{reason}. Пересними, пожалуйста, при хорошем освещении."
INAPPROPRIATE = "Это фото я не могу обработать. Пришли, пожалуйста, фото задания из учебника или тетради."
PRIVACY_WARNING = "⚠️ На фото видны лица или личные данные. В следующий раз лучше снимать только задание."
ASK_CHOICE = "На фото несколько заданий. Напиши номер того, с которым помочь:\n{options}"
BAD_CHOICE = "Не понял номер. Напиши число от 1 до {count}."

CONFIRM_PARSE = "📝 Я правильно понял задание?\n\n{text}"
FIX_PARSE = "Напиши задание текстом так, как оно написано в учебнике."
TASK_ACCEPTED = "📝 Задание:\n\n{text}\n\nНажми «Показать подсказку», когда понадобится помощь."
TASK_TEXT_UNKNOWN = "Задание распознано."

HINT_HEADER = "💡 Подсказка {level}:"
HINT_MISSING = "Подсказка не найдена."
HINTS_EXHAUSTED = "Подсказки закончились. Попробуй решить сам или посмотри похожее задание."
DONT_LIKE_HINT = "Понял, попробую объяснить по-другому."

ASK_SOLUTION = "Жду решение: пришли фото или напиши ответ текстом."
ANSWER_EMPTY = "Распознан пустой ответ. Пришли решение ещё раз."
ANSWER_CORRECT = "🎉 Верно! Отличная работа."
ANSWER_INCORRECT = "🤔 В решении есть ошибка.{feedback}\n\nПопробуй ещё раз или посмотри похожее задание."
ANSWER_UNCERTAIN = "Я не уверен в проверке. Проверь решение ещё раз или посмотри похожее задание."
NO_ACCEPTED_TASK = "Нет подтверждённого задания. Пришли фото и подтверди распознавание."

ANALOGUE_HEADER = "📘 Похожее задание:\n\n{task}"
ANALOGUE_STEPS = "\n\nРешение по шагам:\n{steps}"
ANALOGUE_EMPTY = "Не получилось придумать похожее задание."

REPORT_SENT = "Отчёт отправлен разработчику. Спасибо!"

DENIED = "Нельзя выполнить действие сейчас: {current} → {proposed}.{hints}"

STAGE_FAILED = {
    "detect": "Не удалось распознать фото.",
    "parse": "Не удалось разобрать задание.",
    "hint": "Не удалось получить подсказку.",
    "ocr": "Не удалось распознать решение на фото.",
    "normalize": "Не удалось разобрать ответ.",
    "check": "Не удалось проверить решение.",
    "analogue": "Не удалось подобрать похожее задание.",
}
RETRY_SUFFIX = " Попробуй ещё раз или сообщи об ошибке."


def state_name(state: ConversationState) -> str:
    return FRIENDLY_NAMES.get(state, state.value)


def denied_text(current: ConversationState, proposed: ConversationState) -> str:
    successors = [state_name(state) for state in allowed_next(current) if state != current]
    hints = ""
    if successors:
        hints = "\nСейчас можно: " + ", ".join(successors) + "."
    return DENIED.format(current=state_name(current), proposed=state_name(proposed), hints=hints)


def stage_failed_text(stage: str) -> str:
    return STAGE_FAILED.get(stage, "Что-то пошло не так.") + RETRY_SUFFIX


def grade_keyboard() -> Keyboard:
    row_a = tuple(Button(str(grade), f"grade{grade}") for grade in range(1, 5))
    return (row_a,)


def report_keyboard() -> Keyboard:
    return ((REPORT_BUTTON,),)


def recovery_keyboard() -> Keyboard:
    return ((NEW_TASK_BUTTON,), (REPORT_BUTTON,))


def confirm_keyboard() -> Keyboard:
    return ((Button("Да", "parse_yes"), Button("Нет", "parse_no")), (REPORT_BUTTON,))


def actions_keyboard(next_level: int, max_level: int = 3) -> Keyboard:
    """Actions offered after a task is shown or a hint is delivered."""

    if next_level > max_level:
        first: tuple[Button, ...] = (ANALOGUE_BUTTON,)
    elif next_level > 1:
        first = (HINT_BUTTON, DONT_LIKE_BUTTON)
    else:
        first = (HINT_BUTTON,)
    return (first, (READY_BUTTON,), (NEW_TASK_BUTTON,), (REPORT_BUTTON,))


def incorrect_keyboard() -> Keyboard:
    return ((ANALOGUE_BUTTON,), (READY_BUTTON,), (NEW_TASK_BUTTON,), (REPORT_BUTTON,))


def correct_keyboard() -> Keyboard:
    return ((NEW_TASK_BUTTON,), (REPORT_BUTTON,))


def choice_text(tasks: Sequence[DetectedTask]) -> str:
    options = "\n".join(f"{index}. {task.label}" for index, task in enumerate(tasks, start=1))
    return ASK_CHOICE.format(options=options)


def parse_choice(text: str, count: int) -> int:
    """Return a zero-based task index from the student's reply, or -1."""

    digits = "".join(ch for ch in text if ch.isdigit())
    if not digits:
        return -1
    number = int(digits)
    if 1 <= number <= count:
        return number - 1
    return -1


def task_text(raw_task_text: str) -> str:
    return TASK_ACCEPTED.format(text=raw_task_text) if raw_task_text else TASK_TEXT_UNKNOWN


def hint_text(level: int, texts: Iterable[str]) -> str:
    body = "\n\n".join(text for text in texts if text)
    if not body:
        return HINT_MISSING
    return f"{HINT_HEADER.format(level=level)}\n\n{body}"


def incorrect_text(feedback: str) -> str:
    return ANSWER_INCORRECT.format(feedback=f"\n\n{feedback}" if feedback else "")


def analogue_text(result: AnalogueResult) -> str:
    if not result.example_task:
        return ANALOGUE_EMPTY
    text = ANALOGUE_HEADER.format(task=result.example_task)
    if result.solution_steps:
        steps = "\n".join(f"{index}. {step}" for index, step in enumerate(result.solution_steps, start=1))
        text += ANALOGUE_STEPS.format(steps=steps)
    return text


def rescan_text(reason: str) -> str:
    return NEEDS_RESCAN.format(reason=f" ({reason})" if reason else "")
