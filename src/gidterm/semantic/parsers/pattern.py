"""Generic rule-driven output parser."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

from gidterm.semantic.state import (
    DetectedIssue,
    IssueSeverity,
    MetricKind,
    MetricValue,
    SemanticState,
)

logger = logging.getLogger(__name__)

PROGRESS_METRIC = "progress"


class ValueType(str, Enum):
    """How a captured group is turned into a metric value."""

    INTEGER = "integer"
    FLOAT = "float"
    PERCENTAGE = "percentage"
    PHASE = "phase"


@dataclass(frozen=True, slots=True)
class PatternRule:
    """Extraction rule: regex, target metric and value parsing.

    For ``PHASE`` rules, ``labels`` maps lower-cased captured text to the
    canonical phase label; when given, captures outside the mapping are
    ignored.
    """

    name: str
    pattern: re.Pattern[str]
    value_type: ValueType
    group: int = 1
    labels: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def compile(  # noqa: PLR0913
        cls,
        name: str,
        pattern: str,
        value_type: ValueType | str,
        *,
        group: int = 1,
        labels: Mapping[str, str] | None = None,
        ignore_case: bool = True,
    ) -> PatternRule:
        flags = re.IGNORECASE if ignore_case else 0
        return cls(
            name=name,
            pattern=re.compile(pattern, flags),
            value_type=ValueType(value_type),
            group=group,
            labels={key.lower(): value for key, value in (labels or {}).items()},
        )


@dataclass(frozen=True, slots=True)
class ProgressPattern:
    """Progress as ``current/total`` or as a bare percentage when ``total_group`` is None."""

    pattern: re.Pattern[str]
    current_group: int = 1
    total_group: int | None = None


@dataclass(frozen=True, slots=True)
class IssuePattern:
    pattern: re.Pattern[str]
    severity: IssueSeverity
    message: str | None = None


class PatternParser:
    """Apply a configurable set of named extraction rules line by line."""

    def __init__(  # noqa: PLR0913
        self,
        name: str,
        *,
        rules: Sequence[PatternRule] = (),
        progress_patterns: Sequence[ProgressPattern] = (),
        phase_pattern: re.Pattern[str] | None = None,
        issue_patterns: Sequence[IssuePattern] = (),
    ) -> None:
        self.name = name
        self.rules = tuple(rules)
        self.progress_patterns = tuple(progress_patterns)
        self.phase_pattern = phase_pattern
        self.issue_patterns = tuple(issue_patterns)

    @classmethod
    def from_mapping(cls, name: str, payload: Mapping[str, object]) -> PatternParser:
        """Build a parser from a plain mapping, e.g. a ``parsers:`` entry in graph.yml.

        Recognised keys: ``rules`` (list of ``{name, pattern, type, group,
        labels}``), ``progress`` (list of regexes with one or two groups),
        ``phase`` (regex with one group), ``errors`` and ``warnings`` (regex
        lists). Invalid regexes raise ``ValueError``.
        """

        try:
            rules = [
                PatternRule.compile(
                    str(raw["name"]),
                    str(raw["pattern"]),
                    str(raw.get("type", ValueType.FLOAT.value)),
                    group=int(raw.get("group", 1)),
                    labels=raw.get("labels") or None,
                )
                for raw in _as_list(payload.get("rules"))
            ]
            progress = []
            for raw in _as_list(payload.get("progress")):
                compiled = re.compile(str(raw), re.IGNORECASE)
                total_group = 2 if compiled.groups >= 2 else None
                progress.append(ProgressPattern(compiled, total_group=total_group))
            phase_raw = payload.get("phase")
            phase = re.compile(str(phase_raw), re.IGNORECASE) if phase_raw else None
            issues = [
                IssuePattern(re.compile(str(raw), re.IGNORECASE), IssueSeverity.ERROR)
                for raw in _as_list(payload.get("errors"))
            ]
            issues.extend(
                IssuePattern(re.compile(str(raw), re.IGNORECASE), IssueSeverity.WARNING)
                for raw in _as_list(payload.get("warnings"))
            )
        except (AttributeError, KeyError, TypeError, ValueError, re.error) as error:
            raise ValueError(f"Invalid parser definition {name!r}: {error}") from error

        return cls(
            name,
            rules=rules,
            progress_patterns=progress,
            phase_pattern=phase,
            issue_patterns=issues,
        )

    @property
    def is_empty(self) -> bool:
        return not (
            self.rules or self.progress_patterns or self.phase_pattern or self.issue_patterns
        )

    def consume(self, lines: Sequence[str], state: SemanticState) -> SemanticState:
        for line in lines:
            state = self._consume_line(line, state)
        return state

    def _consume_line(self, line: str, state: SemanticState) -> SemanticState:
        fraction = _extract_progress(line, self.progress_patterns)
        if fraction is not None:
            state = state.with_progress(fraction)

        for rule in self.rules:
            state = _apply_rule(rule, line, state)

        if self.phase_pattern is not None:
            match = self.phase_pattern.search(line)
            if match is not None and match.group(1):
                state = state.with_phase(match.group(1))

        issue = _first_issue(line, self.issue_patterns)
        if issue is not None:
            state = state.with_issue(issue)
        return state


def _apply_rule(rule: PatternRule, line: str, state: SemanticState) -> SemanticState:
    match = rule.pattern.search(line)
    if match is None:
        return state
    try:
        raw = match.group(rule.group)
    except IndexError:
        logger.debug("Rule %s has no group %d", rule.name, rule.group)
        return state
    if raw is None:
        return state

    value = _parse_value(rule, raw.strip())
    if value is None:
        logger.debug("Rule %s could not parse %r", rule.name, raw)
        return state

    state = state.with_metric(rule.name, value)
    if value.kind == MetricKind.PHASE:
        state = state.with_phase(str(value.value))
    elif value.kind == MetricKind.PERCENTAGE and rule.name == PROGRESS_METRIC:
        state = state.with_progress(float(value.value) / 100.0)
    return state


def _parse_value(rule: PatternRule, raw: str) -> MetricValue | None:
    try:
        if rule.value_type == ValueType.INTEGER:
            return MetricValue(kind=MetricKind.INTEGER, value=int(raw))
        if rule.value_type == ValueType.FLOAT:
            return MetricValue(kind=MetricKind.FLOAT, value=float(raw))
        if rule.value_type == ValueType.PERCENTAGE:
            return MetricValue(kind=MetricKind.PERCENTAGE, value=float(raw.rstrip("%").strip()))
    except ValueError:
        return None

    if rule.labels:
        label = rule.labels.get(raw.lower())
        if label is None:
            return None
        return MetricValue(kind=MetricKind.PHASE, value=label)
    return MetricValue(kind=MetricKind.PHASE, value=raw) if raw else None


def _extract_progress(line: str, patterns: Sequence[ProgressPattern]) -> float | None:
    for progress in patterns:
        match = progress.pattern.search(line)
        if match is None:
            continue
        try:
            current = float(match.group(progress.current_group))
            if progress.total_group is None:
                return current / 100.0
            total = float(match.group(progress.total_group))
        except (IndexError, TypeError, ValueError):
            continue
        if total > 0:
            return current / total
    return None


def _first_issue(line: str, patterns: Sequence[IssuePattern]) -> DetectedIssue | None:
    for issue in patterns:
        if issue.pattern.search(line):
            return DetectedIssue(
                severity=issue.severity,
                message=issue.message or line.strip(),
                line=line,
            )
    return None


def _as_list(value: object) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def empty_parser() -> PatternParser:
    """Parser with no rules: output is captured but nothing is extracted."""

    return PatternParser("raw")


def generic_parser() -> PatternParser:
    """Common progress, phase and error patterns for build/test style output."""

    return PatternParser(
        "generic",
        progress_patterns=(
            ProgressPattern(re.compile(r"\[=*>?\s*\]\s*(\d+(?:\.\d+)?)%")),
            ProgressPattern(re.compile(r"(\d+(?:\.\d+)?)%")),
            ProgressPattern(re.compile(r"\b(\d+)/(\d+)\b"), current_group=1, total_group=2),
        ),
        phase_pattern=re.compile(r"(?:Phase|Stage):\s*(\w+)"),
        issue_patterns=(
            IssuePattern(re.compile(r"error:", re.IGNORECASE), IssueSeverity.ERROR),
            IssuePattern(re.compile(r"\bfailed\b", re.IGNORECASE), IssueSeverity.ERROR),
            IssuePattern(re.compile(r"exception", re.IGNORECASE), IssueSeverity.ERROR),
            IssuePattern(re.compile(r"warn(?:ing)?:", re.IGNORECASE), IssueSeverity.WARNING),
        ),
    )
