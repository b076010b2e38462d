"""Controllers for gidterm CLI commands."""

from __future__ import annotations

import json
import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from gidterm.config import Settings
from gidterm.core.graph import GraphError, TaskGraph
from gidterm.core.models import ReportedStatus
from gidterm.core.scheduler import EventKind, RunSummary, Scheduler, SchedulerEvent
from gidterm.executor.pty_executor import ProcessExecutor
from gidterm.history import HistoryRepository
from gidterm.semantic.interpreter import OutputInterpreter
from gidterm.semantic.registry import default_registry
from gidterm.semantic.state import SemanticState
from gidterm.workspace import (
    GraphFile,
    WorkspaceError,
    build_registry,
    load_project,
    load_workspace,
)

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_PATH = Path(".gid") / "graph.yml"


@dataclass(slots=True)
class RunCommand:
    """CLI inputs for executing a graph."""

    graph_path: Path | None
    workspace: Path | None
    max_concurrency: int | None
    db_path: Path | None
    history: bool = True
    show_output: bool = False


@dataclass(slots=True)
class ValidateCommand:
    """CLI inputs for graph validation."""

    graph_path: Path | None
    workspace: Path | None


@dataclass(slots=True)
class HistoryCommand:
    """CLI inputs for run history listing."""

    db_path: Path | None
    task_id: str | None
    limit: int
    output_format: str = "table"


@dataclass(slots=True)
class ParseCommand:
    """CLI inputs for offline parsing of a captured log file."""

    log_path: Path
    task_type: str | None
    graph_path: Path | None = None


@dataclass(slots=True)
class CommandResult:
    """Report to render in CLI."""

    lines: list[str]
    success: bool


class GidtermCliController:
    """Coordinates graph loading, scheduling and history inspection."""

    def run(
        self,
        command: RunCommand,
        *,
        echo: Callable[[str], None] | None = None,
    ) -> CommandResult:
        """Execute the graph until quiescent; ``echo`` receives live progress lines."""

        settings = Settings.from_env(db_path=command.db_path)
        if command.max_concurrency is not None:
            settings.scheduler.max_concurrency = command.max_concurrency
        if not command.history:
            settings.history.enabled = False
        settings.validate()

        graph, graph_files = _load_graph(command.graph_path, command.workspace)
        registry = build_registry(graph_files)
        recorder = _HistoryRecorder(settings, _project_label(graph_files))
        printer = _EventPrinter(echo, show_output=command.show_output)

        def on_event(event: SchedulerEvent) -> None:
            printer(event)
            recorder(event)

        scheduler = Scheduler(
            graph,
            executor=ProcessExecutor(settings.executor),
            registry=registry,
            settings=settings.scheduler,
            output_tail_lines=settings.history.output_tail_lines,
            on_event=on_event,
        )
        try:
            with _signal_handlers(scheduler):
                summary = scheduler.run()
        finally:
            recorder.close()

        lines = _summary_lines(graph, scheduler, summary)
        if recorder.session_id is not None:
            lines.append(f"History session: {recorder.session_id}")
        return CommandResult(lines=lines, success=summary.ok)

    def validate(self, command: ValidateCommand) -> CommandResult:
        graph, graph_files = _load_graph(command.graph_path, command.workspace)
        build_registry(graph_files)
        lines = [
            f"Graph OK: tasks={len(graph)} projects={len(graph_files)} "
            f"ready={len(graph.ready_tasks())}",
            "Execution order: " + " -> ".join(graph.topological_order()),
        ]
        return CommandResult(lines=lines, success=True)

    def history(self, command: HistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if not settings.history.db_path.exists():
            return [f"No history database at {settings.history.db_path}"]
        repository = HistoryRepository(settings.history.db_path)
        try:
            repository.init_schema()
            runs = repository.list_runs(task_id=command.task_id, limit=command.limit)
        finally:
            repository.close()

        if command.output_format == "json":
            return [
                json.dumps(
                    {"runs": [run.to_dict() for run in runs], "count": len(runs)},
                    ensure_ascii=False,
                    indent=2,
                ),
            ]
        if not runs:
            return ["No runs recorded."]
        lines = ["started_at | task | attempt | status | exit | duration | progress | errors"]
        for run in runs:
            exit_label = (
                f"sig{run.exit_signal}" if run.exit_signal is not None else str(run.exit_code)
            )
            lines.append(
                f"{run.started_at:%Y-%m-%d %H:%M:%S} | {run.task_id} | {run.attempt} | "
                f"{run.status}{_reason_suffix(run.failure_reason)} | {exit_label} | "
                f"{run.duration_seconds:.1f}s | {_format_progress(run.semantic)} | "
                f"{len(run.semantic.errors)}",
            )
        return lines

    def parse(self, command: ParseCommand) -> list[str]:
        """Replay a captured log through the parser chosen for ``task_type``."""

        if command.graph_path is not None:
            _, graph_files = load_project(command.graph_path)
            registry = build_registry(graph_files)
        else:
            registry = default_registry()
        parser = registry.for_task_type(command.task_type)
        interpreter = OutputInterpreter(parser)
        with command.log_path.open("rb") as handle:
            for block in iter(lambda: handle.read(65_536), b""):
                interpreter.feed(block)
        state = interpreter.flush()

        lines = [
            f"Parser: {parser.name}",
            f"Lines: {state.lines_seen}",
            f"Progress: {_format_progress(state)}",
            f"Phase: {state.phase or '-'}",
        ]
        for name, value in sorted(state.metrics.items()):
            lines.append(f"Metric {name}: {value.value}")
        for issue in state.issues:
            lines.append(f"{issue.severity.value.capitalize()}: {issue.message}")
        return lines

    def parsers(self, graph_path: Path | None = None) -> list[str]:
        if graph_path is not None:
            _, graph_files = load_project(graph_path)
            registry = build_registry(graph_files)
        else:
            registry = default_registry()
        lines = [f"Fallback parser: {registry.fallback.name}"]
        for task_type, parser_name in registry.task_types().items():
            lines.append(f"{task_type} -> {parser_name}")
        return lines


class _HistoryRecorder:
    """Scheduler observer that persists finished runs."""

    def __init__(self, settings: Settings, project: str) -> None:
        self.session_id: str | None = None
        self._repository: HistoryRepository | None = None
        if not settings.history.enabled:
            return
        self._repository = HistoryRepository(settings.history.db_path)
        self._repository.init_schema()
        self.session_id = self._repository.start_session(project)

    def __call__(self, event: SchedulerEvent) -> None:
        if self._repository is None or self.session_id is None or event.record is None:
            return
        self._repository.save_run(self.session_id, event.record)

    def close(self) -> None:
        if self._repository is None:
            return
        if self.session_id is not None:
            self._repository.finish_session(self.session_id)
        self._repository.close()


class _EventPrinter:
    def __init__(self, echo: Callable[[str], None] | None, *, show_output: bool) -> None:
        self._echo = echo
        self._show_output = show_output

    def __call__(self, event: SchedulerEvent) -> None:
        if self._echo is None:
            return
        if event.kind == EventKind.STARTED:
            self._echo(f"[{event.task_id}] started ({event.message})")
        elif event.kind == EventKind.OUTPUT and self._show_output:
            for line in event.lines:
                self._echo(f"[{event.task_id}] {line}")
        elif event.kind == EventKind.SIGNAL:
            self._echo(f"[{event.task_id}] error detected: {event.message}")
        elif event.kind == EventKind.SPAWN_FAILED:
            self._echo(f"[{event.task_id}] failed to start: {event.message}")
        elif event.kind == EventKind.FINISHED and event.record is not None:
            record = event.record
            detail = record.error_summary or f"{record.duration_seconds:.1f}s"
            self._echo(
                f"[{event.task_id}] {record.status.value}"
                f"{_reason_suffix(record.failure_reason.value if record.failure_reason else None)}"
                f" - {detail}",
            )


def _load_graph(
    graph_path: Path | None,
    workspace: Path | None,
) -> tuple[TaskGraph, list[GraphFile]]:
    if graph_path is not None and workspace is not None:
        raise ValueError("Use either a graph file or a workspace directory, not both.")
    try:
        if workspace is not None:
            return load_workspace(workspace)
        return load_project(graph_path or DEFAULT_GRAPH_PATH)
    except GraphError as error:
        raise WorkspaceError(f"Invalid task graph: {error}") from error


def _project_label(graph_files: list[GraphFile]) -> str:
    return ",".join(graph_file.project for graph_file in graph_files)


def _summary_lines(graph: TaskGraph, scheduler: Scheduler, summary: RunSummary) -> list[str]:
    lines = [
        "Run completed: "
        f"succeeded={summary.succeeded} failed={summary.failed} "
        f"cancelled={summary.cancelled} blocked={summary.blocked} "
        f"pending={summary.pending} peak_running={summary.peak_running} "
        f"elapsed={summary.elapsed_seconds:.1f}s",
    ]
    snapshot = scheduler.snapshot()
    for task in snapshot.tasks:
        if task.reported_status == ReportedStatus.SUCCEEDED:
            continue
        label = task.reported_status.value + _reason_suffix(
            task.failure_reason.value if task.failure_reason else None,
        )
        last = task.last_run
        detail = f" - {last.error_summary}" if last and last.error_summary else ""
        lines.append(f"  {task.task_id}: {label}{detail}")
    if summary.blocked:
        lines.append(f"Blocked tasks: {', '.join(sorted(graph.blocked_tasks()))}")
    return lines


def _reason_suffix(reason: str | None) -> str:
    return f" ({reason})" if reason else ""


def _format_progress(state: SemanticState) -> str:
    if state.progress is None:
        return "-"
    return f"{state.progress * 100:.0f}%"


@contextmanager
def _signal_handlers(scheduler: Scheduler) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s, shutting down running tasks", name)
        scheduler.request_shutdown()

    installed = True
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        installed = False
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
