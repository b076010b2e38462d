"""Parser for interactive coding-agent sessions (claude, codex, opencode, pi)."""

from __future__ import annotations

from collections.abc import Sequence

from gidterm.semantic.state import DetectedIssue, IssueSeverity, SemanticState

PHASE_RUNNING = "running"
PHASE_THINKING = "thinking"
PHASE_WAITING_INPUT = "waiting_input"
PHASE_COMPLETED = "completed"
PHASE_ERROR = "error"

_ERROR_TOKENS: tuple[str, ...] = (
    "error:",
    "error!",
    "failed",
    "failure",
    "exception",
    "panic",
    "crash",
    "aborted",
    "fatal",
    "cannot",
    "couldn't",
    "unable to",
    "permission denied",
)
_WAITING_TOKENS: tuple[str, ...] = (
    "waiting for input",
    "waiting for",
    "press enter",
    "press any key",
    "[y/n]",
    "(y/n)",
    "confirm",
    "continue?",
    "proceed?",
    "approve",
    "permission",
    "enter your",
    "type your",
    "would you like",
    "do you want",
    "please provide",
    "please enter",
)
_COMPLETED_TOKENS: tuple[str, ...] = (
    "done",
    "completed",
    "finished",
    "success",
    "all tasks complete",
    "goodbye",
    "bye",
    "exiting",
    "session ended",
    "task complete",
)
_THINKING_TOKENS: tuple[str, ...] = (
    "thinking",
    "processing",
    "analyzing",
    "generating",
    "working on",
    "computing",
    "waiting for response",
    "loading",
    "searching",
    "reading",
    "reviewing",
)

# Checked in order; the first table with a hit classifies the line.
_STATUS_TABLES: tuple[tuple[str, tuple[str, ...]], ...] = (
    (PHASE_ERROR, _ERROR_TOKENS),
    (PHASE_WAITING_INPUT, _WAITING_TOKENS),
    (PHASE_COMPLETED, _COMPLETED_TOKENS),
    (PHASE_THINKING, _THINKING_TOKENS),
)


def classify_agent_line(line: str) -> str | None:
    """Status label for one output line, or ``None`` when nothing matches."""

    lowered = line.lower()
    for phase, tokens in _STATUS_TABLES:
        if any(token in lowered for token in tokens):
            return phase
    return None


class AgentParser:
    """Track what a coding agent is doing from its terminal output.

    The phase follows the most recent line that carries a status token; lines
    without one leave it unchanged, and a session that has printed nothing
    recognisable yet is ``running``. Error lines are also recorded as issues.
    """

    def __init__(self, name: str = "agent") -> None:
        self.name = name

    def consume(self, lines: Sequence[str], state: SemanticState) -> SemanticState:
        for line in lines:
            phase = classify_agent_line(line)
            if phase is None:
                if state.phase is None:
                    state = state.with_phase(PHASE_RUNNING)
                continue
            state = state.with_phase(phase)
            if phase == PHASE_ERROR:
                state = state.with_issue(
                    DetectedIssue(severity=IssueSeverity.ERROR, message=line.strip(), line=line),
                )
        return state
