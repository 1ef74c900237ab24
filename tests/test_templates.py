from __future__ import annotations

import json
from pathlib import Path

import pytest

from core.errors import TemplateLoadError
from core.templates import TemplateRegistry, compile_pattern
from core.textnorm import normalize_task_type, normalize_text

CATALOG_DIR = Path(__file__).resolve().parents[1] / "templates"


def _document(code: str, title: str = "", version: str = "v1") -> dict:
    return {
        "template_registry": {
            "registry_version": version,
            "templates": [
                {
                    "template_code": code,
                    "template_id": f"profile_{code}",
                    "title": title or code,
                    "grade_min": 2,
                    "grade_max": 4,
                    "formats_allowed": ["word_problem"],
                    "routing": {
                        "match_keys": {"task_type": "Expressions"},
                        "routing_rules": [
                            {
                                "rule_id": f"{code}_r1",
                                "must_have": {"text_patterns_any": ["Ёлка"], "visual_kinds_any": ["Table"]},
                                "must_not": {"text_patterns_any": ["  "]},
                                "routing_priority": 25,
                            }
                        ],
                    },
                }
            ],
        },
        "template_profiles": {f"profile_{code}": {"hint_style_profile": "socratic", "common_mistakes": ["x"]}},
    }


def test_normalize_text_folds_case_symbols_and_spaces() -> None:
    assert normalize_text("  Ёлка ×  2 ÷ 4 − 1 ") == "елка * 2 : 4 - 1"


def test_normalize_text_strips_latin_diacritics_but_keeps_short_i() -> None:
    assert normalize_text("Café") == "cafe"
    assert normalize_text("Йогурт и чай") == "йогурт и чай"


def test_normalize_task_type_applies_aliases() -> None:
    assert normalize_task_type(" Expressions. ") == "arithmetic_fluency"
    assert normalize_task_type("equation") == "patterns_logic"
    assert normalize_task_type("word_problem") == "word_problem"


def test_compile_pattern_modes() -> None:
    regex = compile_pattern(r"\d+\s*:\s*\d+")
    short = compile_pattern("Цена")
    long = compile_pattern("навстречу друг другу")
    broken = compile_pattern("(незакрытая")

    assert regex.is_regex and regex.regex is not None
    assert short.word_regex is not None and short.normalized == "цена"
    assert long.word_regex is None and long.words == ["навстречу", "друг", "другу"]
    assert broken.is_regex and broken.regex is None


def test_from_documents_builds_templates_and_profiles() -> None:
    registry = TemplateRegistry.from_documents([_document("T05")])

    template = registry.get("T05")
    assert template is not None
    assert len(registry) == 1
    assert registry.versions == ("v1",)
    assert template.task_type == "arithmetic_fluency"
    assert template.grade_allowed(3) and not template.grade_allowed(5)
    rule = template.rules[0]
    assert rule.priority == 25
    assert rule.must_have.text_patterns[0].normalized == "елка"
    assert rule.must_have.visual_kinds == ("table",)
    assert rule.must_not.text_patterns == ()
    profile = registry.profile("profile_T05")
    assert profile is not None and profile.common_mistakes == ("x",)


def test_later_documents_win() -> None:
    registry = TemplateRegistry.from_documents([_document("T05", "first"), _document("T05", "second", "v2")])

    assert len(registry) == 1
    assert registry.get("T05").title == "second"
    assert registry.versions == ("v1", "v2")


def test_missing_registry_section_is_rejected() -> None:
    with pytest.raises(TemplateLoadError):
        TemplateRegistry.from_documents([{"template_profiles": {}}])


def test_template_without_code_is_rejected() -> None:
    document = _document("T05")
    del document["template_registry"]["templates"][0]["template_code"]

    with pytest.raises(TemplateLoadError):
        TemplateRegistry.from_documents([document])


def test_from_directory_skips_broken_files(tmp_path: Path) -> None:
    (tmp_path / "T01_ok.json").write_text(json.dumps(_document("T01")), encoding="utf-8")
    (tmp_path / "T02_broken.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "T03_no_registry.json").write_text(json.dumps({"x": 1}), encoding="utf-8")
    (tmp_path / "other.json").write_text(json.dumps(_document("X99")), encoding="utf-8")

    registry = TemplateRegistry.from_directory(tmp_path)

    assert [template.code for template in registry.templates] == ["T01"]


def test_from_directory_requires_existing_directory(tmp_path: Path) -> None:
    with pytest.raises(TemplateLoadError):
        TemplateRegistry.from_directory(tmp_path / "missing")


def test_shipped_catalog_loads() -> None:
    registry = TemplateRegistry.from_directory(CATALOG_DIR)

    assert {template.code for template in registry.templates} == {"T01", "T02", "T10", "T20"}
    for template in registry.templates:
        assert registry.profile(template.template_id) is not None
