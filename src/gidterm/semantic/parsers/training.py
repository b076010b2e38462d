"""Parser for iterative numeric-training output (epochs, steps, loss curves)."""

from __future__ import annotations

import math
import re
from collections.abc import Sequence

from gidterm.semantic.state import (
    DetectedIssue,
    IssueSeverity,
    MetricKind,
    MetricValue,
    SemanticState,
)

_NUMBER = r"([-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:e[-+]?\d+)?|nan|inf)"

_EPOCH = re.compile(r"\bepoch\s*[:=]?\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE)
_STEP = re.compile(r"\b(?:step|iter(?:ation)?|batch)\s*[:=]?\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE)
_FLOAT_METRICS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("loss", re.compile(rf"(?<!\w)loss\s*[:=]\s*{_NUMBER}", re.IGNORECASE)),
    (
        "val_loss",
        re.compile(rf"\bval(?:id(?:ation)?)?[_ ]loss\s*[:=]\s*{_NUMBER}", re.IGNORECASE),
    ),
    ("accuracy", re.compile(rf"(?<!\w)(?:acc|accuracy)\s*[:=]\s*{_NUMBER}", re.IGNORECASE)),
    (
        "learning_rate",
        re.compile(rf"(?<!\w)(?:lr|learning[ _]?rate)\s*[:=]\s*{_NUMBER}", re.IGNORECASE),
    ),
)
_PHASES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("validation", re.compile(r"\bvalidat(?:ing|ion)\b", re.IGNORECASE)),
    ("testing", re.compile(r"\btest(?:ing)?\b", re.IGNORECASE)),
    ("training", re.compile(r"\b(?:train(?:ing)?|epoch)\b", re.IGNORECASE)),
)
_FATAL_PATTERNS: tuple[tuple[str, str | None], ...] = (
    ("cuda out of memory", "Out of GPU memory"),
    ("traceback (most recent call last)", "Python traceback"),
    ("error:", None),
)


class TrainingParser:
    """Recognise epoch/step counters, loss-like metrics and fatal tokens."""

    def __init__(self, name: str = "ml_training") -> None:
        self.name = name

    def consume(self, lines: Sequence[str], state: SemanticState) -> SemanticState:
        for line in lines:
            state = self._consume_line(line, state)
        return state

    def _consume_line(self, line: str, state: SemanticState) -> SemanticState:
        epoch = _last_match(_EPOCH, line)
        if epoch is not None:
            current, total = int(epoch.group(1)), int(epoch.group(2))
            state = state.with_metric("epoch", MetricValue(MetricKind.INTEGER, current))
            state = state.with_metric("total_epochs", MetricValue(MetricKind.INTEGER, total))
            if total > 0:
                state = state.with_progress(current / total)

        step = _last_match(_STEP, line)
        if step is not None:
            current, total = int(step.group(1)), int(step.group(2))
            state = state.with_metric("step", MetricValue(MetricKind.INTEGER, current))
            state = state.with_metric("total_steps", MetricValue(MetricKind.INTEGER, total))
            if total > 0 and state.metric("total_epochs") is None:
                state = state.with_progress(current / total)

        for metric_name, pattern in _FLOAT_METRICS:
            match = _last_match(pattern, line)
            if match is None:
                continue
            value = float(match.group(1))
            if math.isnan(value) or math.isinf(value):
                if metric_name.endswith("loss"):
                    state = state.with_issue(
                        DetectedIssue(
                            severity=IssueSeverity.ERROR,
                            message="Loss is NaN - training diverged",
                            line=line,
                        ),
                    )
                continue
            state = state.with_metric(metric_name, MetricValue(MetricKind.FLOAT, value))

        for phase, pattern in _PHASES:
            if pattern.search(line):
                state = state.with_phase(phase)
                break

        lowered = line.lower()
        for token, message in _FATAL_PATTERNS:
            if token in lowered:
                state = state.with_issue(
                    DetectedIssue(
                        severity=IssueSeverity.ERROR,
                        message=message or line.strip(),
                        line=line,
                    ),
                )
                break
        return state


def _last_match(pattern: re.Pattern[str], line: str) -> re.Match[str] | None:
    matches = list(pattern.finditer(line))
    return matches[-1] if matches else None
