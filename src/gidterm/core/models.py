"""Domain models for the task graph, runs and status snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from gidterm.semantic.state import SemanticState

Command = str | list[str] | None

_PRIORITY_LEVELS = {
    "critical": 3,
    "high": 2,
    "medium": 1,
    "normal": 1,
    "low": 0,
}


class TaskStatus(str, Enum):
    """Stored task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReportedStatus(str, Enum):
    """Status as shown to observers, including the derived blocked state."""

    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a task ended in the failed state."""

    EXIT_CODE = "exit_code"
    SPAWN_ERROR = "spawn_error"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED})


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def parse_priority(value: int | str | None) -> int:
    """Normalize an integer or named priority level."""

    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"Invalid priority: {value!r}")
    if isinstance(value, int):
        return value
    normalized = value.strip().lower()
    if normalized in _PRIORITY_LEVELS:
        return _PRIORITY_LEVELS[normalized]
    try:
        return int(normalized)
    except ValueError as error:
        raise ValueError(f"Invalid priority: {value!r}") from error


@dataclass(slots=True)
class TaskDefinition:
    """Input descriptor for one task, as written in a graph definition."""

    name: str
    command: Command = None
    depends_on: tuple[str, ...] = ()
    priority: int = 0
    task_type: str | None = None
    description: str = ""
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class Task:
    """Task record stored in the graph arena."""

    task_id: str
    command: Command
    depends_on: tuple[str, ...]
    priority: int
    task_type: str | None
    order: int
    description: str = ""
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    failure_reason: FailureReason | None = None

    @property
    def is_milestone(self) -> bool:
        if self.command is None:
            return True
        if isinstance(self.command, str):
            return not self.command.strip()
        return not self.command

    @property
    def project(self) -> str | None:
        if ":" not in self.task_id:
            return None
        return self.task_id.split(":", 1)[0]


@dataclass(frozen=True, slots=True)
class ExitOutcome:
    """How a child process ended."""

    exit_code: int | None
    signal: int | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "signal": self.signal,
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True, slots=True)
class RunRecord:
    """One execution attempt of a task."""

    task_id: str
    attempt: int
    started_at: datetime
    finished_at: datetime
    status: TaskStatus
    outcome: ExitOutcome | None
    failure_reason: FailureReason | None
    semantic: SemanticState
    output: tuple[str, ...] = ()
    output_truncated: bool = False
    error_summary: str | None = None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        """Serialize into a JSON-ready mapping."""

        return {
            "task_id": self.task_id,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "status": self.status.value,
            "outcome": self.outcome.to_dict() if self.outcome is not None else None,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "semantic": self.semantic.to_dict(),
            "output": list(self.output),
            "output_truncated": self.output_truncated,
            "error_summary": self.error_summary,
        }


@dataclass(frozen=True, slots=True)
class TaskSnapshot:
    """Read-only view of one task for dashboards and reports."""

    task_id: str
    status: TaskStatus
    reported_status: ReportedStatus
    failure_reason: FailureReason | None
    priority: int
    task_type: str | None
    depends_on: tuple[str, ...]
    live: SemanticState | None
    runs: tuple[RunRecord, ...]

    @property
    def last_run(self) -> RunRecord | None:
        return self.runs[-1] if self.runs else None


@dataclass(frozen=True, slots=True)
class SchedulerSnapshot:
    """Point-in-time view of the whole scheduler."""

    tasks: tuple[TaskSnapshot, ...]
    running: int
    max_concurrency: int
    taken_at: datetime

    def get(self, task_id: str) -> TaskSnapshot | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def count(self, status: ReportedStatus) -> int:
        return sum(1 for task in self.tasks if task.reported_status == status)
