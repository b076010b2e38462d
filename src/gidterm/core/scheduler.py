"""Scheduler that turns graph readiness into concurrent pty task runs."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from gidterm.config import SchedulerSettings
from gidterm.core.graph import InvalidTransition, TaskGraph
from gidterm.core.models import (
    ExitOutcome,
    FailureReason,
    RunRecord,
    SchedulerSnapshot,
    Task,
    TaskSnapshot,
    TaskStatus,
    utc_now,
)
from gidterm.executor.buffer import OutputChunk
from gidterm.executor.pty_executor import ProcessExecutor, ProcessHandle, SpawnError
from gidterm.semantic.interpreter import OutputInterpreter
from gidterm.semantic.registry import ParserRegistry, default_registry
from gidterm.semantic.state import SemanticState

logger = logging.getLogger(__name__)

_DRAIN_SLACK_SECONDS = 2.0


class EventKind(str, Enum):
    """Notifications delivered to the scheduler's observer."""

    STARTED = "started"
    OUTPUT = "output"
    SIGNAL = "signal"
    FINISHED = "finished"
    SPAWN_FAILED = "spawn_failed"


@dataclass(frozen=True, slots=True)
class SchedulerEvent:
    """One observable change; ``record`` is set for finished and spawn-failed runs."""

    kind: EventKind
    task_id: str
    lines: tuple[str, ...] = ()
    state: SemanticState | None = None
    record: RunRecord | None = None
    message: str | None = None


@dataclass(slots=True)
class RunSummary:
    """Aggregate task counters for CLI reporting."""

    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    blocked: int = 0
    pending: int = 0
    peak_running: int = 0
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.cancelled == 0 and self.blocked == 0 and self.pending == 0


@dataclass(slots=True)
class _ActiveRun:
    task_id: str
    attempt: int
    handle: ProcessHandle
    interpreter: OutputInterpreter
    started_at: datetime
    errors_seen: int = 0
    thread: threading.Thread | None = field(default=None, repr=False)


class Scheduler:
    """Single owner of task status, live semantic state and process handles.

    The control loop and the per-task monitor threads share one condition
    variable. Every status write happens under it and wakes the loop, so
    readiness is always re-evaluated against the latest statuses.
    """

    def __init__(  # noqa: PLR0913
        self,
        graph: TaskGraph,
        *,
        executor: ProcessExecutor | None = None,
        registry: ParserRegistry | None = None,
        settings: SchedulerSettings | None = None,
        output_tail_lines: int = 500,
        on_event: Callable[[SchedulerEvent], None] | None = None,
    ) -> None:
        self._graph = graph
        self._executor = executor or ProcessExecutor()
        self._registry = registry or default_registry()
        self._settings = settings or SchedulerSettings()
        if self._settings.max_concurrency <= 0:
            raise ValueError("max_concurrency must be a positive integer")
        self._max_concurrency = self._settings.max_concurrency
        self._output_tail_lines = output_tail_lines
        self._on_event = on_event

        self._lock = threading.RLock()
        self._wakeup = threading.Condition(self._lock)
        self._active: dict[str, _ActiveRun] = {}
        self._live: dict[str, SemanticState] = {}
        self._runs: dict[str, list[RunRecord]] = {task_id: [] for task_id in graph.task_ids()}
        self._shutdown_requested = False
        self._loop_running = False
        self._peak_running = 0
        self._loop_thread: threading.Thread | None = None
        self._last_summary: RunSummary | None = None

    @property
    def graph(self) -> TaskGraph:
        return self._graph

    @property
    def max_concurrency(self) -> int:
        with self._lock:
            return self._max_concurrency

    # -- control loop ---------------------------------------------------------

    def run(self, *, stay_alive: bool = False) -> RunSummary:
        """Drive the graph until quiescent (or until shutdown when ``stay_alive``)."""

        with self._lock:
            if self._loop_running:
                raise RuntimeError("Scheduler loop is already running")
            self._loop_running = True

        started = time.monotonic()
        logger.info(
            "Scheduler started: %d tasks, max concurrency %d",
            len(self._graph),
            self.max_concurrency,
        )
        try:
            while True:
                with self._wakeup:
                    events, launches = self._start_ready()
                    if self._shutdown_requested:
                        finished = not self._active
                    else:
                        finished = not stay_alive and self._is_quiescent()
                    if not events and not launches and not finished:
                        self._wakeup.wait(timeout=self._settings.poll_interval_seconds)
                # Spawning forks and execs; keep it outside the lock.
                for task in launches:
                    spawn_failure = self._launch(task)
                    if spawn_failure is not None:
                        events.append(spawn_failure)
                self._emit_all(events)
                if finished:
                    break
        finally:
            with self._lock:
                self._loop_running = False

        summary = self.summary()
        summary.elapsed_seconds = time.monotonic() - started
        self._last_summary = summary
        logger.info(
            "Scheduler quiescent: succeeded=%d failed=%d cancelled=%d blocked=%d",
            summary.succeeded,
            summary.failed,
            summary.cancelled,
            summary.blocked,
        )
        return summary

    def start_background(self, *, stay_alive: bool = True) -> threading.Thread:
        """Run the control loop in a daemon thread."""

        thread = threading.Thread(
            target=self.run,
            kwargs={"stay_alive": stay_alive},
            daemon=True,
            name="gidterm-scheduler",
        )
        self._loop_thread = thread
        thread.start()
        return thread

    def join(self, timeout: float | None = None) -> RunSummary | None:
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=timeout)
            if self._loop_thread.is_alive():
                return None
        return self._last_summary

    def _is_quiescent(self) -> bool:
        return not self._active and not self._graph.ready_tasks()

    def _start_ready(self) -> tuple[list[SchedulerEvent], list[Task]]:
        """Complete ready milestones and pick the tasks to spawn (lock held)."""

        events: list[SchedulerEvent] = []
        launches: list[Task] = []
        if self._shutdown_requested:
            return events, launches
        for task_id in self._graph.ready_queue():
            task = self._graph.get(task_id)
            if task.is_milestone:
                events.append(self._complete_milestone(task))
                continue
            if len(self._active) + len(launches) >= self._max_concurrency:
                # Milestones further down the queue need no slot.
                continue
            launches.append(task)
        return events, launches

    def _launch(self, task: Task) -> SchedulerEvent | None:
        started_at = utc_now()
        try:
            handle = self._executor.start(task.command, cwd=task.cwd, env=task.env)
        except SpawnError as error:
            return self._record_spawn_failure(task, started_at, error)

        with self._wakeup:
            if not self._can_claim(task.task_id) or not self._safe_mark(
                task.task_id,
                TaskStatus.RUNNING,
            ):
                stale = True
            else:
                stale = False
                self._register_run(task, handle, started_at)
        if stale:
            logger.info("Task %s is no longer startable, discarding pid %d", task.task_id, handle.pid)
            handle.kill()
            handle.wait(timeout=_DRAIN_SLACK_SECONDS)
        return None

    def _can_claim(self, task_id: str) -> bool:
        """Re-check a spawned task against state that may have moved meanwhile."""

        return (
            not self._shutdown_requested
            and len(self._active) < self._max_concurrency
            and task_id in self._graph.ready_tasks()
        )

    def _record_spawn_failure(
        self,
        task: Task,
        started_at: datetime,
        error: SpawnError,
    ) -> SchedulerEvent | None:
        logger.warning("Task %s failed to start: %s", task.task_id, error)
        with self._lock:
            if not self._safe_mark(task.task_id, TaskStatus.FAILED, reason=FailureReason.SPAWN_ERROR):
                return None
            record = RunRecord(
                task_id=task.task_id,
                attempt=len(self._runs[task.task_id]) + 1,
                started_at=started_at,
                finished_at=utc_now(),
                status=TaskStatus.FAILED,
                outcome=None,
                failure_reason=FailureReason.SPAWN_ERROR,
                semantic=SemanticState(),
                error_summary=str(error),
            )
            self._runs[task.task_id].append(record)
            self._wakeup.notify_all()
        return SchedulerEvent(
            EventKind.SPAWN_FAILED,
            task.task_id,
            record=record,
            message=str(error),
        )

    def _register_run(self, task: Task, handle: ProcessHandle, started_at: datetime) -> None:
        attempt = len(self._runs[task.task_id]) + 1
        interpreter = OutputInterpreter(
            self._registry.for_task_type(task.task_type),
            tail_lines=self._output_tail_lines,
        )
        run = _ActiveRun(
            task_id=task.task_id,
            attempt=attempt,
            handle=handle,
            interpreter=interpreter,
            started_at=started_at,
        )
        self._active[task.task_id] = run
        self._live[task.task_id] = interpreter.state
        self._peak_running = max(self._peak_running, len(self._active))
        run.thread = threading.Thread(
            target=self._monitor,
            args=(run,),
            daemon=True,
            name=f"gidterm-task-{task.task_id}",
        )
        run.thread.start()
        logger.info(
            "Started %s (pid %d, attempt %d, parser %s)",
            task.task_id,
            handle.pid,
            attempt,
            interpreter.parser.name,
        )

    def _complete_milestone(self, task: Task) -> SchedulerEvent:
        now = utc_now()
        self._safe_mark(task.task_id, TaskStatus.RUNNING)
        self._safe_mark(task.task_id, TaskStatus.SUCCEEDED)
        record = RunRecord(
            task_id=task.task_id,
            attempt=len(self._runs[task.task_id]) + 1,
            started_at=now,
            finished_at=now,
            status=TaskStatus.SUCCEEDED,
            outcome=ExitOutcome(exit_code=0),
            failure_reason=None,
            semantic=SemanticState(),
        )
        self._runs[task.task_id].append(record)
        logger.info("Milestone %s reached", task.task_id)
        return SchedulerEvent(EventKind.FINISHED, task.task_id, record=record)

    # -- per-task monitor thread ------------------------------------------------

    def _monitor(self, run: _ActiveRun) -> None:
        self._emit(
            SchedulerEvent(EventKind.STARTED, run.task_id, message=f"pid {run.handle.pid}"),
        )
        outcome: ExitOutcome | None = None
        error_summary: str | None = None
        try:
            while True:
                chunk = run.handle.read(timeout=self._settings.poll_interval_seconds)
                if chunk is None:
                    if run.handle.output.exhausted():
                        break
                    continue
                self._ingest(run, chunk)
            lines_before = run.interpreter.state.lines_seen
            self._publish(run, run.interpreter.flush(), lines_before=lines_before)
            outcome = run.handle.wait()
        except Exception as error:
            logger.exception("Monitoring task %s failed", run.task_id)
            error_summary = f"Internal error while monitoring task: {error}"
            run.handle.kill()
            outcome = None
        self._finish(run, outcome, error_summary)

    def _ingest(self, run: _ActiveRun, chunk: OutputChunk) -> None:
        lines_before = run.interpreter.state.lines_seen
        state = run.interpreter.feed_chunk(chunk)
        self._publish(run, state, lines_before=lines_before)

    def _publish(self, run: _ActiveRun, state: SemanticState, *, lines_before: int) -> None:
        with self._lock:
            if self._active.get(run.task_id) is run:
                self._live[run.task_id] = state

        events: list[SchedulerEvent] = []
        if state.lines_seen > lines_before:
            new_lines = state.lines_seen - lines_before
            transcript = run.interpreter.transcript()
            events.append(
                SchedulerEvent(
                    EventKind.OUTPUT,
                    run.task_id,
                    lines=transcript[-new_lines:],
                    state=state,
                ),
            )

        errors = state.errors
        if len(errors) > run.errors_seen:
            fresh = errors[run.errors_seen :]
            if run.errors_seen == 0:
                logger.warning("Task %s reported an error signal: %s", run.task_id, fresh[0].message)
            run.errors_seen = len(errors)
            for issue in fresh:
                events.append(
                    SchedulerEvent(
                        EventKind.SIGNAL,
                        run.task_id,
                        lines=(issue.line,),
                        state=state,
                        message=issue.message,
                    ),
                )
        self._emit_all(events)

    def _finish(
        self,
        run: _ActiveRun,
        outcome: ExitOutcome | None,
        error_summary: str | None,
    ) -> None:
        if outcome is None:
            status, reason = TaskStatus.FAILED, FailureReason.INTERNAL_ERROR
        elif outcome.cancelled:
            status, reason = TaskStatus.FAILED, FailureReason.CANCELLED
        elif outcome.succeeded:
            status, reason = TaskStatus.SUCCEEDED, None
        else:
            status, reason = TaskStatus.FAILED, FailureReason.EXIT_CODE
            error_summary = _describe_exit(outcome)

        record = RunRecord(
            task_id=run.task_id,
            attempt=run.attempt,
            started_at=run.started_at,
            finished_at=utc_now(),
            status=status,
            outcome=outcome,
            failure_reason=reason,
            semantic=run.interpreter.state,
            output=run.interpreter.transcript(),
            output_truncated=run.interpreter.output_truncated,
            error_summary=error_summary,
        )
        with self._wakeup:
            self._safe_mark(run.task_id, status, reason=reason)
            self._runs[run.task_id].append(record)
            self._active.pop(run.task_id, None)
            self._live.pop(run.task_id, None)
            self._wakeup.notify_all()

        logger.info(
            "Finished %s: %s%s",
            run.task_id,
            status.value,
            f" ({reason.value})" if reason else "",
        )
        self._emit(SchedulerEvent(EventKind.FINISHED, run.task_id, record=record))

    # -- control commands -----------------------------------------------------

    def restart(self, task_id: str) -> None:
        """Reset a finished task to pending; dependents are left as they are."""

        with self._wakeup:
            self._graph.reset(task_id)
            self._live.pop(task_id, None)
            self._wakeup.notify_all()
        logger.info("Task %s reset to pending", task_id)

    def stop(self, task_id: str, *, grace_seconds: float | None = None) -> bool:
        """Terminate one running task; it ends as failed/cancelled."""

        with self._lock:
            run = self._active.get(task_id)
        if run is None:
            return False
        logger.info("Stopping %s", task_id)
        run.handle.terminate(grace_seconds)
        return True

    def stop_all(self, *, grace_seconds: float | None = None) -> list[str]:
        with self._lock:
            runs = list(self._active.values())
        for run in runs:
            run.handle.terminate(grace_seconds)
        return [run.task_id for run in runs]

    def request_shutdown(self, *, grace_seconds: float | None = None) -> None:
        """Stop starting tasks and terminate every running one."""

        grace = self._settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        with self._wakeup:
            self._shutdown_requested = True
            runs = list(self._active.values())
            self._wakeup.notify_all()
        if runs:
            logger.info("Shutdown requested, terminating %d running tasks", len(runs))
        for run in runs:
            run.handle.terminate(grace)

    def shutdown(self, *, grace_seconds: float | None = None) -> bool:
        """Request shutdown and wait (bounded) until no task is running."""

        grace = self._settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self.request_shutdown(grace_seconds=grace)
        with self._wakeup:
            drained = self._wakeup.wait_for(
                lambda: not self._active,
                timeout=grace + _DRAIN_SLACK_SECONDS,
            )
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=grace + _DRAIN_SLACK_SECONDS)
        if not drained:
            logger.warning("Shutdown grace period elapsed with tasks still running")
        return drained

    def set_concurrency_limit(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("Concurrency limit must be a positive integer")
        with self._wakeup:
            self._max_concurrency = limit
            self._wakeup.notify_all()
        logger.info("Concurrency limit set to %d", limit)

    def send_input(self, task_id: str, data: bytes | str) -> int:
        with self._lock:
            run = self._active.get(task_id)
        if run is None:
            raise KeyError(f"Task is not running: {task_id!r}")
        return run.handle.write(data)

    # -- queries --------------------------------------------------------------

    def snapshot(self) -> SchedulerSnapshot:
        """Consistent copy of every task's status, live state and run history."""

        with self._lock:
            tasks = tuple(
                TaskSnapshot(
                    task_id=task.task_id,
                    status=task.status,
                    reported_status=self._graph.reported_status(task.task_id),
                    failure_reason=task.failure_reason,
                    priority=task.priority,
                    task_type=task.task_type,
                    depends_on=task.depends_on,
                    live=self._live.get(task.task_id),
                    runs=tuple(self._runs[task.task_id]),
                )
                for task in self._graph
            )
            return SchedulerSnapshot(
                tasks=tasks,
                running=len(self._active),
                max_concurrency=self._max_concurrency,
                taken_at=utc_now(),
            )

    def live_state(self, task_id: str) -> SemanticState | None:
        with self._lock:
            return self._live.get(task_id)

    def history(self) -> dict[str, tuple[RunRecord, ...]]:
        with self._lock:
            return {task_id: tuple(runs) for task_id, runs in self._runs.items()}

    def summary(self) -> RunSummary:
        summary = RunSummary()
        with self._lock:
            summary.peak_running = self._peak_running
            for task in self._graph:
                if task.status == TaskStatus.SUCCEEDED:
                    summary.succeeded += 1
                elif task.status == TaskStatus.FAILED:
                    if task.failure_reason == FailureReason.CANCELLED:
                        summary.cancelled += 1
                    else:
                        summary.failed += 1
                elif task.status == TaskStatus.PENDING:
                    if self._graph.is_blocked(task.task_id):
                        summary.blocked += 1
                    else:
                        summary.pending += 1
        return summary

    # -- helpers --------------------------------------------------------------

    def _safe_mark(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        reason: FailureReason | None = None,
    ) -> bool:
        try:
            self._graph.mark(task_id, status, reason=reason)
        except InvalidTransition as error:
            logger.warning("Ignoring status change: %s", error)
            return False
        return True

    def _emit_all(self, events: list[SchedulerEvent]) -> None:
        for event in events:
            self._emit(event)

    def _emit(self, event: SchedulerEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:  # noqa: BLE001
            logger.warning("Event callback failed for %s", event.task_id, exc_info=True)


def _describe_exit(outcome: ExitOutcome) -> str:
    if outcome.signal is not None:
        return f"Killed by signal {outcome.signal}"
    return f"Exited with code {outcome.exit_code}"
