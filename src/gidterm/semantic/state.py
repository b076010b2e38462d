"""Structured state extracted from a task's output stream."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class MetricKind(str, Enum):
    """Typed value categories a parser can populate."""

    INTEGER = "integer"
    FLOAT = "float"
    PERCENTAGE = "percentage"
    PHASE = "phase"


class IssueSeverity(str, Enum):
    """Severity of a detected output signal."""

    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class MetricValue:
    """One extracted metric value."""

    kind: MetricKind
    value: int | float | str

    def as_float(self) -> float | None:
        if self.kind == MetricKind.PHASE:
            return None
        return float(self.value)

    def as_int(self) -> int | None:
        if self.kind != MetricKind.INTEGER:
            return None
        return int(self.value)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "value": self.value}


@dataclass(frozen=True, slots=True)
class DetectedIssue:
    """Warning or error signal matched in the output."""

    severity: IssueSeverity
    message: str
    line: str

    def to_dict(self) -> dict[str, str]:
        return {"severity": self.severity.value, "message": self.message, "line": self.line}


@dataclass(frozen=True, slots=True)
class SemanticState:
    """Immutable snapshot of what a task's output has told us so far.

    Parsers never mutate a state in place: every ``with_*`` helper returns a
    new instance, so a snapshot handed to a reader stays consistent while the
    task keeps producing output.
    """

    metrics: dict[str, MetricValue] = field(default_factory=dict)
    progress: float | None = None
    phase: str | None = None
    issues: tuple[DetectedIssue, ...] = ()
    lines_seen: int = 0
    truncated_bytes: int = 0

    @property
    def errors(self) -> tuple[DetectedIssue, ...]:
        return tuple(issue for issue in self.issues if issue.severity == IssueSeverity.ERROR)

    @property
    def warnings(self) -> tuple[DetectedIssue, ...]:
        return tuple(issue for issue in self.issues if issue.severity == IssueSeverity.WARNING)

    def metric(self, name: str) -> MetricValue | None:
        return self.metrics.get(name)

    def with_metric(self, name: str, value: MetricValue) -> SemanticState:
        metrics = dict(self.metrics)
        metrics[name] = value
        return replace(self, metrics=metrics)

    def with_progress(self, fraction: float) -> SemanticState:
        return replace(self, progress=min(1.0, max(0.0, fraction)))

    def with_phase(self, phase: str) -> SemanticState:
        return replace(self, phase=phase)

    def with_issue(self, issue: DetectedIssue) -> SemanticState:
        return replace(self, issues=(*self.issues, issue))

    def with_lines_seen(self, count: int) -> SemanticState:
        return replace(self, lines_seen=self.lines_seen + count)

    def with_truncated(self, dropped: int) -> SemanticState:
        return replace(self, truncated_bytes=self.truncated_bytes + dropped)

    def to_dict(self) -> dict[str, Any]:
        """Serialize into a JSON-ready mapping."""

        return {
            "metrics": {name: value.to_dict() for name, value in sorted(self.metrics.items())},
            "progress": self.progress,
            "phase": self.phase,
            "issues": [issue.to_dict() for issue in self.issues],
            "lines_seen": self.lines_seen,
            "truncated_bytes": self.truncated_bytes,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SemanticState:
        metrics = {
            name: MetricValue(kind=MetricKind(raw["kind"]), value=raw["value"])
            for name, raw in (payload.get("metrics") or {}).items()
        }
        issues = tuple(
            DetectedIssue(
                severity=IssueSeverity(raw["severity"]),
                message=raw["message"],
                line=raw.get("line", ""),
            )
            for raw in payload.get("issues") or []
        )
        return cls(
            metrics=metrics,
            progress=payload.get("progress"),
            phase=payload.get("phase"),
            issues=issues,
            lines_seen=int(payload.get("lines_seen", 0)),
            truncated_bytes=int(payload.get("truncated_bytes", 0)),
        )
