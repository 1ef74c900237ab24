from __future__ import annotations

from pathlib import Path
from typing import Sequence

from core.contracts import ParseItem, ParseTask, PedKeys, VisualFact
from core.routing import (
    STATUS_MATCHED,
    STATUS_REJECTED_GRADE,
    STATUS_REJECTED_MUST_HAVE,
    STATUS_REJECTED_MUST_NOT,
    STATUS_REJECTED_TASK_TYPE,
    RoutingContext,
    RoutingTrace,
    build_routing_context,
    format_routing_trace,
    profile_core,
    select_template,
)
from core.templates import TemplateRegistry

CATALOG = TemplateRegistry.from_directory(Path(__file__).resolve().parents[1] / "templates")


def _context(
    text: str,
    *,
    grade: int = 4,
    task_type: str = "word_problem",
    fmt: str = "word_problem",
    visual: Sequence[str] = (),
    subject: str = "math",
) -> RoutingContext:
    task = ParseTask(
        subject=subject,
        grade=grade,
        task_text_clean=text,
        visual_facts=tuple(VisualFact(kind=kind) for kind in visual),
    )
    item = ParseItem(item_id="1", item_text_clean="", ped_keys=PedKeys(task_type=task_type, format=fmt))
    return build_routing_context(task, [item])


def _template(
    code: str,
    text_any: Sequence[str] = (),
    visual_any: Sequence[str] = (),
    must_not: Sequence[str] = (),
    priority: int = 0,
) -> dict:
    return {
        "template_code": code,
        "template_id": code,
        "formats_allowed": ["word_problem"],
        "routing": {
            "routing_rules": [
                {
                    "rule_id": f"{code}_r1",
                    "must_have": {"text_patterns_any": list(text_any), "visual_kinds_any": list(visual_any)},
                    "must_not": {"text_patterns_any": list(must_not)},
                    "routing_priority": priority,
                }
            ]
        },
    }


def _registry(*templates: dict) -> TemplateRegistry:
    return TemplateRegistry.from_documents(
        [
            {
                "template_registry": {"templates": list(templates)},
                "template_profiles": {template["template_id"]: {"hint_style_profile": "p"} for template in templates},
            }
        ]
    )


def test_build_routing_context_uses_most_frequent_item_keys() -> None:
    task = ParseTask(
        subject="math",
        grade=3,
        task_text_clean="Реши   ЗАДАЧУ",
        visual_facts=(VisualFact(kind="Table"), VisualFact(kind="")),
    )
    items = [
        ParseItem(item_id="a", item_text_clean="Ёжик", ped_keys=PedKeys(task_type="Expressions", format="column")),
        ParseItem(item_id="b", item_text_clean="", ped_keys=PedKeys(task_type="geometry", format="expression")),
        ParseItem(item_id="c", item_text_clean="", ped_keys=PedKeys(task_type="geometry", format="column")),
    ]

    context = build_routing_context(task, items)

    assert context.text_all == "реши задачу ежик"
    assert context.visual_kinds == frozenset({"table"})
    assert context.task_type == "geometry"
    assert context.format == "column"
    assert context.grade == 3


def test_frequency_ties_keep_the_first_value_seen() -> None:
    task = ParseTask(subject="math", grade=3)
    items = [
        ParseItem(item_id="a", item_text_clean="", ped_keys=PedKeys(task_type="word_problem")),
        ParseItem(item_id="b", item_text_clean="", ped_keys=PedKeys(task_type="geometry")),
    ]

    assert build_routing_context(task, items).task_type == "word_problem"


def test_motion_problem_routes_to_motion_template() -> None:
    context = _context(
        "Два поезда вышли навстречу друг другу. Скорость первого 60 км/ч, "
        "расстояние между городами 300 км. Через сколько часов они встретятся?"
    )
    trace = RoutingTrace()

    winner = select_template(context, CATALOG, trace)

    assert winner is not None
    assert winner.template.code == "T01"
    assert winner.rule_id == "T01_speed"
    assert winner.anchors_matched == 3
    # 3 anchors + allowed format + priority 50 // 10
    assert winner.score == 90 + 10 + 5
    statuses = {entry.template_code: entry.status for entry in trace.entries}
    assert statuses["T02"] == STATUS_REJECTED_MUST_NOT
    assert statuses["T10"] == STATUS_REJECTED_TASK_TYPE
    assert statuses["T20"] == STATUS_REJECTED_TASK_TYPE


def test_must_not_disqualifies_only_the_rule() -> None:
    context = _context("Цена тетради 12 руб. Сколько стоят 3 тетради?", grade=3)
    trace = RoutingTrace()

    winner = select_template(context, CATALOG, trace)

    t01 = [entry for entry in trace.entries if entry.template_code == "T01"]
    assert [entry.status for entry in t01] == [STATUS_REJECTED_MUST_NOT, STATUS_REJECTED_MUST_HAVE]
    assert t01[0].rejected_by == ("text:цена",)
    assert winner is not None
    assert winner.template.code == "T02"
    assert winner.anchors_matched == 2
    assert winner.score == 60 + 10 + 4


def test_long_phrase_matches_by_proximity() -> None:
    winner = select_template(_context("Два поезда идут навстречу друг к другу от двух станций."), CATALOG)

    assert winner is not None
    assert winner.rule_id == "T01_towards"
    assert winner.score == 30 + 10 + 3


def test_visual_rule_wins_and_falls_back_to_text_rule() -> None:
    with_figure = _context(
        "Найди периметр прямоугольника", grade=3, task_type="geometry", fmt="drawing", visual=["Rectangle"]
    )
    text_only = _context("Найди периметр прямоугольника", grade=3, task_type="geometry", fmt="drawing")

    first = select_template(with_figure, CATALOG)
    second = select_template(text_only, CATALOG)

    assert first.rule_id == "T10_figure"
    assert first.visual_matched
    assert first.score == 50 + 30 + 10 + 6
    assert second.rule_id == "T10_text_only"
    assert second.score == 30 + 10 + 2


def test_regex_pattern_and_task_type_alias() -> None:
    context = _context("Вычисли: 48 : 6 + 7", grade=2, task_type="calculation", fmt="expression")

    winner = select_template(context, CATALOG)

    assert winner.template.code == "T20"
    assert winner.anchors_matched == 2


def test_grade_outside_range_is_rejected() -> None:
    trace = RoutingTrace()
    winner = select_template(_context("Скорость 60 км/ч", grade=9), CATALOG, trace)

    assert winner is None
    statuses = {entry.template_code: entry.status for entry in trace.entries}
    assert statuses["T01"] == STATUS_REJECTED_GRADE
    assert statuses["T02"] == STATUS_REJECTED_GRADE


def test_other_subjects_short_circuit() -> None:
    trace = RoutingTrace()

    assert select_template(_context("Скорость 60 км/ч", subject="russian"), CATALOG, trace) is None
    assert trace.entries == []
    assert trace.candidate_count == 0


def test_task_without_subject_is_not_routed() -> None:
    trace = RoutingTrace()

    assert select_template(_context("Скорость 60 км/ч, расстояние 300 км", subject=""), CATALOG, trace) is None
    assert trace.entries == []
    assert select_template(_context("Скорость 60 км/ч, расстояние 300 км", subject=" Math "), CATALOG) is not None


def test_visual_match_beats_more_anchors() -> None:
    registry = _registry(
        _template("A", text_any=["один", "два", "три"], priority=90),
        _template("B", text_any=["один"], visual_any=["table"]),
    )

    winner = select_template(_context("один два три", visual=["table"]), registry)

    assert winner.template.code == "B"


def test_more_anchors_beat_higher_score() -> None:
    registry = _registry(
        _template("A", text_any=["один", "два"]),
        _template("B", text_any=["один"], priority=500),
    )

    winner = select_template(_context("один два"), registry)

    assert winner.template.code == "A"


def test_full_tie_goes_to_smaller_code() -> None:
    registry = _registry(
        _template("T9", text_any=["один"]),
        _template("T10", text_any=["один"]),
        _template("T2", text_any=["один"]),
    )
    context = _context("один")

    winners = {select_template(context, registry).template.code for _ in range(5)}

    assert winners == {"T10"}


def test_anchor_score_is_capped_at_three() -> None:
    registry = _registry(_template("A", text_any=["a1", "a2", "a3", "a4"]))

    winner = select_template(_context("a1 a2 a3 a4", fmt=""), registry)

    assert winner.anchors_matched == 4
    assert winner.score == 90


def test_empty_must_have_is_vacuously_satisfied() -> None:
    registry = _registry(_template("A", priority=70))

    winner = select_template(_context("что угодно", fmt=""), registry)

    assert winner.score == 7


def test_profile_core_is_a_detached_copy() -> None:
    winner = select_template(_context("Скорость 60 км/ч"), CATALOG)

    core = profile_core(winner)
    core["common_mistakes"].append("changed")
    core["teaching_pattern"]["goal"] = "changed"

    assert core["template_id"] == "word_motion"
    assert "changed" not in winner.profile.common_mistakes
    assert winner.profile.teaching_pattern["goal"] != "changed"
    assert profile_core(None) is None


def test_format_routing_trace_lists_winner_and_rejections() -> None:
    trace = RoutingTrace()
    select_template(_context("Цена тетради 12 руб.", grade=3), CATALOG, trace)

    text = format_routing_trace(trace)

    assert "WINNER: T02" in text
    assert "status=rejected_must_not" in text
    assert "rejected_by: text:цена" in text
    assert any(entry.status == STATUS_MATCHED for entry in trace.entries)
