"""Template catalog loading (core domain).

The registry is built once at startup and never mutated afterwards. Every
text pattern is normalized and, where it looks like a regex, compiled at load
time so routing a task never re-parses the catalog.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import re
from typing import Any, Iterable, Optional

from core.errors import TemplateLoadError
from core.textnorm import cyrillic_word_regex, is_regex_pattern, normalize_task_type, normalize_text

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextPattern:
    """One catalog text pattern, prepared for every matching mode."""

    raw: str
    normalized: str
    regex: Optional[re.Pattern] = None
    word_regex: Optional[re.Pattern] = None

    @property
    def is_regex(self) -> bool:
        return is_regex_pattern(self.raw)

    @property
    def words(self) -> list[str]:
        return self.normalized.split()


def compile_pattern(raw: str) -> TextPattern:
    normalized = normalize_text(raw)
    regex = None
    word_regex = None
    if is_regex_pattern(raw):
        try:
            regex = re.compile(raw.lower().replace("ё", "е"))
        except re.error as exc:
            LOGGER.warning("Invalid routing regex %r, matching as plain text: %s", raw, exc)
    elif len(normalized.split()) <= 2 and len(normalized) >= 3:
        word_regex = cyrillic_word_regex(normalized)
    return TextPattern(raw=raw, normalized=normalized, regex=regex, word_regex=word_regex)


@dataclass(frozen=True)
class RulePatterns:
    text_patterns: tuple[TextPattern, ...] = ()
    visual_kinds: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: Optional[dict]) -> "RulePatterns":
        config = config or {}
        return cls(
            text_patterns=tuple(
                compile_pattern(str(pattern))
                for pattern in config.get("text_patterns_any", []) or []
                if str(pattern).strip()
            ),
            visual_kinds=tuple(
                str(kind).strip().lower()
                for kind in config.get("visual_kinds_any", []) or []
                if str(kind).strip()
            ),
        )


@dataclass(frozen=True)
class RoutingRule:
    rule_id: str
    must_have: RulePatterns
    must_not: RulePatterns
    priority: int = 0


@dataclass(frozen=True)
class Template:
    code: str
    template_id: str
    title: str
    grade_min: int
    grade_max: int
    formats_allowed: frozenset[str]
    task_type: str
    rules: tuple[RoutingRule, ...]
    confusables: tuple[str, ...] = ()
    hint_policy_defaults: dict[str, Any] = field(default_factory=dict)

    def grade_allowed(self, grade: int) -> bool:
        return self.grade_min <= grade <= self.grade_max


@dataclass(frozen=True)
class TemplateProfile:
    """Teaching profile handed to hint generation."""

    template_id: str
    hint_style_profile: Any = None
    max_hints_default: int = 3
    age_language: dict[str, Any] = field(default_factory=dict)
    teaching_pattern: dict[str, Any] = field(default_factory=dict)
    common_mistakes: tuple[str, ...] = ()
    terminology_rules: Any = None
    disclosure_defaults: dict[str, Any] = field(default_factory=dict)


def _build_template(entry: dict) -> Template:
    routing = entry.get("routing") or {}
    match_keys = routing.get("match_keys") or {}
    formats = entry.get("formats_allowed") or match_keys.get("formats_allowed") or []
    rules = tuple(
        RoutingRule(
            rule_id=str(rule.get("rule_id", "")),
            must_have=RulePatterns.from_config(rule.get("must_have")),
            must_not=RulePatterns.from_config(rule.get("must_not")),
            priority=int(rule.get("routing_priority", 0) or 0),
        )
        for rule in routing.get("routing_rules", []) or []
    )
    return Template(
        code=str(entry["template_code"]),
        template_id=str(entry.get("template_id") or entry["template_code"]),
        title=str(entry.get("title", "")),
        grade_min=int(entry.get("grade_min", 1) or 1),
        grade_max=int(entry.get("grade_max", 11) or 11),
        formats_allowed=frozenset(str(fmt) for fmt in formats),
        task_type=normalize_task_type(str(match_keys.get("task_type", "") or "")),
        rules=rules,
        confusables=tuple(str(code) for code in routing.get("confusables", []) or []),
        hint_policy_defaults=dict(entry.get("hint_policy_defaults") or {}),
    )


def _build_profile(template_id: str, entry: dict) -> TemplateProfile:
    return TemplateProfile(
        template_id=template_id,
        hint_style_profile=entry.get("hint_style_profile"),
        max_hints_default=int(entry.get("max_hints_default", 3) or 3),
        age_language=dict(entry.get("age_language") or {}),
        teaching_pattern=dict(entry.get("teaching_pattern") or {}),
        common_mistakes=tuple(str(item) for item in entry.get("common_mistakes", []) or []),
        terminology_rules=entry.get("terminology_rules"),
        disclosure_defaults=dict(entry.get("disclosure_defaults") or {}),
    )


class TemplateRegistry:
    """Immutable catalog of teaching templates and their profiles."""

    def __init__(
        self,
        templates: Iterable[Template],
        profiles: dict[str, TemplateProfile],
        subject: str = "math",
        versions: Iterable[str] = (),
    ) -> None:
        self._templates = tuple(templates)
        self._profiles = dict(profiles)
        self._by_code = {template.code: template for template in self._templates}
        self.subject = subject
        self.versions = tuple(versions)

    @property
    def templates(self) -> tuple[Template, ...]:
        return self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def get(self, code: str) -> Optional[Template]:
        return self._by_code.get(code)

    def profile(self, template_id: str) -> Optional[TemplateProfile]:
        return self._profiles.get(template_id)

    @classmethod
    def from_documents(cls, documents: Iterable[dict], subject: str = "math") -> "TemplateRegistry":
        """Build a registry from decoded catalog documents.

        Later documents win when two of them declare the same template code or
        profile id, matching the sorted file order used by ``from_directory``.
        """

        templates: dict[str, Template] = {}
        profiles: dict[str, TemplateProfile] = {}
        versions: list[str] = []
        for document in documents:
            registry = document.get("template_registry")
            if not isinstance(registry, dict):
                raise TemplateLoadError("Missing template_registry section")
            version = registry.get("registry_version")
            if version and version not in versions:
                versions.append(str(version))
            for entry in registry.get("templates", []) or []:
                try:
                    template = _build_template(entry)
                except (KeyError, TypeError, ValueError) as exc:
                    raise TemplateLoadError(f"Invalid template entry: {exc}") from exc
                templates[template.code] = template
            for template_id, entry in (document.get("template_profiles") or {}).items():
                profiles[template_id] = _build_profile(template_id, entry or {})
        return cls(templates.values(), profiles, subject=subject, versions=versions)

    @classmethod
    def from_directory(
        cls,
        directory: Path,
        subject: str = "math",
        pattern: str = "T*.json",
    ) -> "TemplateRegistry":
        """Load every catalog file under ``directory``.

        Unreadable files are logged and skipped so one broken template does not
        take routing down for the whole catalog.
        """

        directory = Path(directory)
        if not directory.is_dir():
            raise TemplateLoadError(f"Templates directory not found: {directory}")

        documents = []
        for path in sorted(directory.glob(pattern)):
            try:
                document = json.loads(path.read_text(encoding="utf-8"))
                cls.from_documents([document], subject=subject)
            except (OSError, json.JSONDecodeError, TemplateLoadError) as exc:
                LOGGER.warning("Skipping template file %s: %s", path.name, exc)
                continue
            documents.append(document)

        registry = cls.from_documents(documents, subject=subject)
        LOGGER.info(
            "Loaded %d templates from %d files in %s",
            len(registry),
            len(documents),
            directory,
        )
        return registry
