"""Template routing and scoring (core domain).

Routing is a pure function of the parsed task and the loaded registry: no
I/O and no hidden state, so the same input always selects the same template.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
import copy
from typing import Iterable, List, Optional

from core.contracts import ParseItem, ParseTask
from core.templates import RoutingRule, RulePatterns, Template, TemplateProfile, TemplateRegistry, TextPattern
from core.textnorm import normalize_task_type, normalize_text

PROXIMITY_WINDOW = 100
MAX_SCORED_ANCHORS = 3

STATUS_MATCHED = "matched"
STATUS_REJECTED_MUST_NOT = "rejected_must_not"
STATUS_REJECTED_MUST_HAVE = "rejected_must_have"
STATUS_REJECTED_GRADE = "rejected_grade"
STATUS_REJECTED_TASK_TYPE = "rejected_task_type"
STATUS_NO_RULES = "no_rules"


@dataclass(frozen=True)
class RoutingContext:
    """Normalized task features used to pick a template."""

    text_all: str
    visual_kinds: frozenset[str]
    task_type: str
    format: str
    grade: int
    subject: str


def _most_frequent(values: Iterable[str]) -> str:
    # Counter keeps first-seen order among equal counts.
    counts = Counter(value for value in values if value)
    if not counts:
        return ""
    return counts.most_common(1)[0][0]


def build_routing_context(task: ParseTask, items: Iterable[ParseItem]) -> RoutingContext:
    items = list(items)
    parts = [task.task_text_clean] + [item.item_text_clean for item in items]
    return RoutingContext(
        text_all=normalize_text(" ".join(parts)),
        visual_kinds=frozenset(fact.kind.lower() for fact in task.visual_facts if fact.kind),
        task_type=normalize_task_type(_most_frequent(item.ped_keys.task_type for item in items)),
        format=_most_frequent(item.ped_keys.format for item in items),
        grade=task.grade,
        subject=task.subject.strip().lower(),
    )


def _match_flexible(text: str, pattern: TextPattern) -> bool:
    """Regex, then substring, then a proximity search for long phrases."""

    if pattern.is_regex:
        if pattern.regex is not None:
            return bool(pattern.regex.search(text))
        return pattern.normalized in text

    if pattern.normalized in text:
        return True

    words = pattern.words
    if len(words) < 3:
        return False
    anchor = f"{words[0]} {words[1]}"
    index = text.find(anchor)
    if index == -1:
        return False
    window = text[index : index + len(anchor) + PROXIMITY_WINDOW]
    return all(word in window for word in words[2:])


def _match_strict(text: str, pattern: TextPattern) -> bool:
    if pattern.is_regex:
        return pattern.regex is not None and bool(pattern.regex.search(text))
    if pattern.word_regex is not None:
        return bool(pattern.word_regex.search(text))
    return pattern.normalized in text


def check_must_not(context: RoutingContext, patterns: RulePatterns) -> List[str]:
    """Return the patterns that disqualify a rule (empty when it survives)."""

    rejected_by = [
        "text:" + pattern.raw for pattern in patterns.text_patterns if _match_strict(context.text_all, pattern)
    ]
    rejected_by.extend("visual:" + kind for kind in patterns.visual_kinds if kind in context.visual_kinds)
    return rejected_by


def check_must_have(context: RoutingContext, patterns: RulePatterns) -> tuple[bool, int, bool, List[str]]:
    """Evaluate a rule's ``must_have`` block.

    Returns ``(satisfied, anchors_matched, visual_matched, matched_patterns)``.
    Both pattern groups use OR semantics and an empty group is satisfied.
    """

    matched_patterns: List[str] = []
    anchors = 0
    for pattern in patterns.text_patterns:
        if _match_flexible(context.text_all, pattern):
            anchors += 1
            matched_patterns.append("text:" + pattern.raw)
    text_ok = not patterns.text_patterns or anchors > 0

    visual_matched = False
    for kind in patterns.visual_kinds:
        if kind in context.visual_kinds:
            visual_matched = True
            matched_patterns.append("visual:" + kind)
            break
    visual_ok = not patterns.visual_kinds or visual_matched

    return text_ok and visual_ok, anchors, visual_matched, matched_patterns


def score_candidate(
    context: RoutingContext,
    template: Template,
    rule: RoutingRule,
    anchors_matched: int,
    visual_matched: bool,
) -> int:
    score = 0
    if visual_matched:
        score += 50
    score += 30 * min(anchors_matched, MAX_SCORED_ANCHORS)
    if context.format and context.format in template.formats_allowed:
        score += 10
    score += rule.priority // 10
    return score


@dataclass(frozen=True)
class TemplateCandidate:
    template: Template
    profile: Optional[TemplateProfile]
    score: int
    rule_id: str
    anchors_matched: int
    visual_matched: bool

    @property
    def rank_key(self) -> tuple:
        """Smaller is better: visual, anchors, score, then template code."""

        return (not self.visual_matched, -self.anchors_matched, -self.score, self.template.code)


@dataclass(frozen=True)
class TraceEntry:
    template_code: str
    rule_id: str
    status: str
    score: int = 0
    anchors_matched: int = 0
    visual_matched: bool = False
    rejected_by: tuple[str, ...] = ()
    matched_patterns: tuple[str, ...] = ()


@dataclass
class RoutingTrace:
    """Per-template evaluation record, filled in when a caller asks for it."""

    context: Optional[RoutingContext] = None
    entries: List[TraceEntry] = field(default_factory=list)
    winner: Optional[TemplateCandidate] = None
    candidate_count: int = 0


def _evaluate_template(
    context: RoutingContext,
    template: Template,
    registry: TemplateRegistry,
    trace: Optional[RoutingTrace],
) -> Optional[TemplateCandidate]:
    def record(entry: TraceEntry) -> None:
        if trace is not None:
            trace.entries.append(entry)

    if context.grade > 0 and not template.grade_allowed(context.grade):
        record(
            TraceEntry(
                template_code=template.code,
                rule_id="",
                status=STATUS_REJECTED_GRADE,
                rejected_by=(f"grade {context.grade} not in [{template.grade_min}, {template.grade_max}]",),
            )
        )
        return None

    if context.task_type and template.task_type and context.task_type != template.task_type:
        record(
            TraceEntry(
                template_code=template.code,
                rule_id="",
                status=STATUS_REJECTED_TASK_TYPE,
                rejected_by=(f"task_type '{context.task_type}' != '{template.task_type}'",),
            )
        )
        return None

    if not template.rules:
        record(TraceEntry(template_code=template.code, rule_id="", status=STATUS_NO_RULES))
        return None

    for rule in template.rules:
        rejected_by = check_must_not(context, rule.must_not)
        if rejected_by:
            record(
                TraceEntry(
                    template_code=template.code,
                    rule_id=rule.rule_id,
                    status=STATUS_REJECTED_MUST_NOT,
                    rejected_by=tuple(rejected_by),
                )
            )
            continue

        satisfied, anchors, visual, matched_patterns = check_must_have(context, rule.must_have)
        if not satisfied:
            record(TraceEntry(template_code=template.code, rule_id=rule.rule_id, status=STATUS_REJECTED_MUST_HAVE))
            continue

        score = score_candidate(context, template, rule, anchors, visual)
        record(
            TraceEntry(
                template_code=template.code,
                rule_id=rule.rule_id,
                status=STATUS_MATCHED,
                score=score,
                anchors_matched=anchors,
                visual_matched=visual,
                matched_patterns=tuple(matched_patterns),
            )
        )
        # Only the first satisfied rule of a template produces a candidate.
        return TemplateCandidate(
            template=template,
            profile=registry.profile(template.template_id),
            score=score,
            rule_id=rule.rule_id,
            anchors_matched=anchors,
            visual_matched=visual,
        )
    return None


def find_candidates(
    context: RoutingContext,
    registry: TemplateRegistry,
    trace: Optional[RoutingTrace] = None,
) -> List[TemplateCandidate]:
    # An empty subject is not routed either.
    if context.subject != registry.subject:
        return []
    candidates = []
    for template in registry.templates:
        candidate = _evaluate_template(context, template, registry, trace)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def select_template(
    context: RoutingContext,
    registry: TemplateRegistry,
    trace: Optional[RoutingTrace] = None,
) -> Optional[TemplateCandidate]:
    """Pick the best template for ``context`` or None when nothing matches."""

    candidates = find_candidates(context, registry, trace)
    winner = min(candidates, key=lambda candidate: candidate.rank_key) if candidates else None
    if trace is not None:
        trace.context = context
        trace.candidate_count = len(candidates)
        trace.winner = winner
    return winner


def profile_core(candidate: Optional[TemplateCandidate]) -> Optional[dict]:
    """Project the winning profile into the payload sent with a hint request."""

    if candidate is None or candidate.profile is None:
        return None
    profile = candidate.profile
    return copy.deepcopy(
        {
            "template_id": profile.template_id,
            "hint_style_profile": profile.hint_style_profile,
            "max_hints_default": profile.max_hints_default,
            "age_language": profile.age_language,
            "teaching_pattern": profile.teaching_pattern,
            "common_mistakes": list(profile.common_mistakes),
            "disclosure_defaults": profile.disclosure_defaults,
        }
    )


def format_routing_trace(trace: RoutingTrace) -> str:
    lines = ["=== ROUTING TRACE ==="]
    context = trace.context
    if context is not None:
        lines.append(f"Text: {context.text_all[:100]}")
        lines.append(f"Visual kinds: {', '.join(sorted(context.visual_kinds)) or '-'}")
        lines.append(
            f"Task type: {context.task_type or '-'}, format: {context.format or '-'}, grade: {context.grade}"
        )
    lines.append(f"Candidates found: {trace.candidate_count}")
    if trace.winner is not None:
        lines.append(
            f"WINNER: {trace.winner.template.code} (score={trace.winner.score}, rule={trace.winner.rule_id})"
        )
    else:
        lines.append("WINNER: none")

    matched = [entry for entry in trace.entries if entry.status == STATUS_MATCHED]
    rejected = [entry for entry in trace.entries if entry.status != STATUS_MATCHED]
    if matched:
        lines.append("MATCHED:")
        for entry in matched:
            lines.append(
                f"  [{entry.template_code}] rule={entry.rule_id} score={entry.score} "
                f"anchors={entry.anchors_matched} visual={entry.visual_matched}"
            )
            if entry.matched_patterns:
                lines.append(f"    patterns: {', '.join(entry.matched_patterns)}")
    if rejected:
        lines.append("REJECTED:")
        for entry in rejected:
            lines.append(f"  [{entry.template_code}] rule={entry.rule_id or '-'} status={entry.status}")
            if entry.rejected_by:
                lines.append(f"    rejected_by: {', '.join(entry.rejected_by)}")
    lines.append("=== END TRACE ===")
    return "\n".join(lines)
