from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path

import allure
import pytest
from conftest import build_graph, pty_only, python_command

from gidterm.config import SchedulerSettings
from gidterm.core.graph import InvalidTransition, TaskGraph
from gidterm.core.models import (
    FailureReason,
    ReportedStatus,
    TaskDefinition,
    TaskStatus,
)
from gidterm.core.scheduler import EventKind, Scheduler, SchedulerEvent
from gidterm.executor.pty_executor import ProcessExecutor

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Dependency-driven Execution"),
    pty_only,
]

_SLEEP_FOREVER = "import time; print('ready', flush=True); time.sleep(60)"


def _task(name: str, code: str | None, *deps: str, **kwargs) -> TaskDefinition:
    command = python_command(code) if code is not None else None
    return TaskDefinition(name=name, command=command, depends_on=deps, **kwargs)


def _scheduler(
    graph: TaskGraph,
    executor: ProcessExecutor,
    *,
    max_concurrency: int = 4,
    on_event: Callable[[SchedulerEvent], None] | None = None,
) -> Scheduler:
    return Scheduler(
        graph,
        executor=executor,
        settings=SchedulerSettings(
            max_concurrency=max_concurrency,
            poll_interval_seconds=0.02,
            shutdown_grace_seconds=2.0,
        ),
        on_event=on_event,
    )


def _wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    raise AssertionError("condition not reached in time")


def test_chain_runs_in_dependency_order(executor: ProcessExecutor) -> None:
    graph = build_graph(
        _task("a", "print('a')"),
        _task("b", "print('b')", "a"),
        _task("c", "print('c')", "b"),
    )
    scheduler = _scheduler(graph, executor)

    summary = scheduler.run()

    assert summary.succeeded == 3
    assert summary.ok
    history = scheduler.history()
    assert history["b"][0].started_at >= history["a"][0].finished_at
    assert history["c"][0].started_at >= history["b"][0].finished_at
    assert "a" in history["a"][0].output


def test_failure_blocks_dependents_and_unrelated_tasks_still_run(
    executor: ProcessExecutor,
) -> None:
    graph = build_graph(
        _task("a", "import sys; sys.exit(1)"),
        _task("b", "print('b')", "a"),
        _task("c", "print('c')"),
    )
    scheduler = _scheduler(graph, executor)

    summary = scheduler.run()

    assert (summary.succeeded, summary.failed, summary.blocked) == (1, 1, 1)
    assert not summary.ok
    assert scheduler.history()["b"] == ()
    snapshot = scheduler.snapshot()
    assert snapshot.get("b").reported_status == ReportedStatus.BLOCKED
    assert snapshot.get("a").failure_reason == FailureReason.EXIT_CODE
    assert snapshot.get("a").last_run.error_summary == "Exited with code 1"


def test_exit_code_is_authoritative_over_detected_errors(executor: ProcessExecutor) -> None:
    events: list[SchedulerEvent] = []
    graph = build_graph(
        _task("noisy", "print('error: something looked wrong')", task_type="build"),
        _task("quiet", "import sys; sys.exit(2)", task_type="build"),
    )
    scheduler = _scheduler(graph, executor, on_event=events.append)

    scheduler.run()

    noisy = scheduler.history()["noisy"][0]
    quiet = scheduler.history()["quiet"][0]
    assert noisy.status == TaskStatus.SUCCEEDED
    assert noisy.semantic.errors
    assert quiet.status == TaskStatus.FAILED
    assert quiet.outcome is not None and quiet.outcome.exit_code == 2
    signals = [event for event in events if event.kind == EventKind.SIGNAL]
    assert [event.task_id for event in signals] == ["noisy"]


def test_concurrency_limit_is_never_exceeded(executor: ProcessExecutor) -> None:
    graph = build_graph(*[_task(f"t{index}", "import time; time.sleep(0.3)") for index in range(5)])
    scheduler = _scheduler(graph, executor, max_concurrency=2)

    summary = scheduler.run()

    assert summary.succeeded == 5
    assert summary.peak_running == 2


def test_raising_the_limit_starts_waiting_tasks(executor: ProcessExecutor) -> None:
    graph = build_graph(*[_task(f"t{index}", _SLEEP_FOREVER) for index in range(4)])
    scheduler = _scheduler(graph, executor, max_concurrency=1)
    scheduler.start_background(stay_alive=True)
    _wait_until(lambda: scheduler.snapshot().running == 1)
    time.sleep(0.3)
    assert scheduler.snapshot().running == 1

    scheduler.set_concurrency_limit(3)
    _wait_until(lambda: scheduler.snapshot().running == 3)
    time.sleep(0.3)

    assert scheduler.snapshot().running == 3
    assert scheduler.shutdown(grace_seconds=1.0)
    assert scheduler.summary().peak_running == 3


def test_lowering_the_limit_holds_back_new_starts(executor: ProcessExecutor) -> None:
    graph = build_graph(*[_task(name, _SLEEP_FOREVER) for name in ("a", "b", "c", "d")])
    scheduler = _scheduler(graph, executor, max_concurrency=2)
    scheduler.start_background(stay_alive=True)
    _wait_until(lambda: scheduler.snapshot().running == 2)

    scheduler.set_concurrency_limit(1)
    assert scheduler.stop("a", grace_seconds=1.0)
    _wait_until(lambda: scheduler.live_state("a") is None)
    time.sleep(0.3)
    assert scheduler.snapshot().running == 1
    assert scheduler.live_state("c") is None

    assert scheduler.stop("b", grace_seconds=1.0)
    _wait_until(lambda: scheduler.live_state("c") is not None)
    time.sleep(0.3)

    assert scheduler.snapshot().running == 1
    assert scheduler.live_state("d") is None
    assert scheduler.shutdown(grace_seconds=1.0)
    assert scheduler.summary().peak_running == 2


class _GatedExecutor(ProcessExecutor):
    """Executor whose ``start`` blocks until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def start(self, command, **kwargs):
        self.entered.set()
        assert self.release.wait(timeout=10)
        return super().start(command, **kwargs)


def test_queries_do_not_wait_for_a_slow_spawn() -> None:
    executor = _GatedExecutor()
    scheduler = _scheduler(build_graph(_task("slow", "print('hi')")), executor)
    scheduler.start_background(stay_alive=False)
    assert executor.entered.wait(timeout=10)

    snapshots = []
    reader = threading.Thread(target=lambda: snapshots.append(scheduler.snapshot()))
    reader.start()
    reader.join(timeout=2)
    assert snapshots, "snapshot blocked behind the spawning task"
    assert snapshots[0].running == 0

    executor.release.set()
    summary = scheduler.join(timeout=10)
    assert summary is not None
    assert summary.succeeded == 1


def test_spawn_finishing_after_shutdown_is_discarded() -> None:
    executor = _GatedExecutor()
    scheduler = _scheduler(build_graph(_task("late", _SLEEP_FOREVER)), executor)
    scheduler.start_background(stay_alive=True)
    assert executor.entered.wait(timeout=10)

    scheduler.request_shutdown(grace_seconds=1.0)
    executor.release.set()
    summary = scheduler.join(timeout=10)

    assert summary is not None
    assert summary.succeeded == 0
    assert scheduler.graph.get("late").status == TaskStatus.PENDING
    assert scheduler.history()["late"] == ()


def test_higher_priority_starts_first(executor: ProcessExecutor) -> None:
    graph = build_graph(
        _task("low", "print('low')", priority=0),
        _task("high", "print('high')", priority=2),
    )
    scheduler = _scheduler(graph, executor, max_concurrency=1)

    scheduler.run()

    history = scheduler.history()
    assert history["high"][0].started_at <= history["low"][0].started_at


def test_spawn_error_fails_task_and_blocks_dependents(executor: ProcessExecutor) -> None:
    events: list[SchedulerEvent] = []
    graph = build_graph(
        TaskDefinition(name="broken", command=["/nonexistent/definitely-not-a-binary"]),
        _task("after", "print('after')", "broken"),
    )
    scheduler = _scheduler(graph, executor, on_event=events.append)

    summary = scheduler.run()

    assert (summary.failed, summary.blocked) == (1, 1)
    record = scheduler.history()["broken"][0]
    assert record.failure_reason == FailureReason.SPAWN_ERROR
    assert record.outcome is None
    assert "Command not found" in (record.error_summary or "")
    assert [event.kind for event in events] == [EventKind.SPAWN_FAILED]


def test_milestone_without_command_succeeds_immediately(executor: ProcessExecutor) -> None:
    graph = build_graph(
        _task("prepare", "print('prep')"),
        _task("gate", None, "prepare"),
        _task("ship", "print('ship')", "gate"),
    )
    scheduler = _scheduler(graph, executor)

    summary = scheduler.run()

    assert summary.succeeded == 3
    gate = scheduler.history()["gate"][0]
    assert gate.outcome is not None and gate.outcome.exit_code == 0
    assert gate.duration_seconds == 0


def test_semantic_state_follows_the_task_type(executor: ProcessExecutor) -> None:
    graph = build_graph(
        _task("train", "print('Epoch 5/10 loss=0.2')", task_type="ml_training"),
        _task("raw", "print('Epoch 5/10 loss=0.2')"),
    )
    scheduler = _scheduler(graph, executor)

    scheduler.run()

    trained = scheduler.history()["train"][0].semantic
    assert trained.progress == pytest.approx(0.5)
    assert trained.metric("loss").as_float() == pytest.approx(0.2)
    assert scheduler.history()["raw"][0].semantic.progress is None


def test_stop_cancels_a_running_task(executor: ProcessExecutor) -> None:
    graph = build_graph(_task("long", _SLEEP_FOREVER), _task("after", "print('x')", "long"))
    scheduler = _scheduler(graph, executor)
    scheduler.start_background(stay_alive=False)
    _wait_until(lambda: scheduler.live_state("long") is not None)

    assert scheduler.stop("long", grace_seconds=1.0)
    summary = scheduler.join(timeout=10)

    assert summary is not None
    assert (summary.cancelled, summary.blocked) == (1, 1)
    record = scheduler.history()["long"][0]
    assert record.failure_reason == FailureReason.CANCELLED
    assert not scheduler.stop("long")


def test_shutdown_terminates_running_tasks_and_stops_the_loop(executor: ProcessExecutor) -> None:
    graph = build_graph(_task("one", _SLEEP_FOREVER), _task("two", _SLEEP_FOREVER))
    scheduler = _scheduler(graph, executor)
    loop = scheduler.start_background(stay_alive=True)
    _wait_until(lambda: scheduler.snapshot().running == 2)

    assert scheduler.shutdown(grace_seconds=1.0)

    assert not loop.is_alive()
    assert scheduler.snapshot().count(ReportedStatus.FAILED) == 2
    assert scheduler.summary().cancelled == 2


def test_restart_runs_a_failed_task_again(executor: ProcessExecutor, tmp_path: Path) -> None:
    marker = tmp_path / "marker"
    flaky = python_command(
        """
        import pathlib, sys
        marker = pathlib.Path(sys.argv[1])
        existed = marker.exists()
        marker.touch()
        sys.exit(0 if existed else 1)
        """,
    )
    graph = build_graph(
        TaskDefinition(name="flaky", command=[*flaky, str(marker)]),
        _task("after", "print('after')", "flaky"),
    )
    scheduler = _scheduler(graph, executor)

    first = scheduler.run()
    scheduler.restart("flaky")
    second = scheduler.run()

    assert (first.failed, first.blocked) == (1, 1)
    assert second.succeeded == 2
    assert [record.attempt for record in scheduler.history()["flaky"]] == [1, 2]


def test_restart_of_running_task_is_rejected(executor: ProcessExecutor) -> None:
    graph = build_graph(_task("long", _SLEEP_FOREVER))
    scheduler = _scheduler(graph, executor)
    scheduler.start_background(stay_alive=False)
    _wait_until(lambda: scheduler.live_state("long") is not None)

    with pytest.raises(InvalidTransition):
        scheduler.restart("long")

    scheduler.shutdown(grace_seconds=1.0)


def test_send_input_reaches_the_task(executor: ProcessExecutor) -> None:
    graph = build_graph(_task("echo", "line = input(); print('got', line)"))
    scheduler = _scheduler(graph, executor)
    scheduler.start_background(stay_alive=False)
    _wait_until(lambda: scheduler.live_state("echo") is not None)

    scheduler.send_input("echo", "hi\n")
    summary = scheduler.join(timeout=10)

    assert summary is not None and summary.succeeded == 1
    assert any("got hi" in line for line in scheduler.history()["echo"][0].output)


def test_send_input_to_idle_task_raises(executor: ProcessExecutor) -> None:
    scheduler = _scheduler(build_graph(_task("idle", "print()")), executor)

    with pytest.raises(KeyError):
        scheduler.send_input("idle", "x")


def test_events_describe_the_lifecycle_and_callback_errors_are_contained(
    executor: ProcessExecutor,
) -> None:
    kinds: list[EventKind] = []

    def observer(event: SchedulerEvent) -> None:
        kinds.append(event.kind)
        raise RuntimeError("observer bug")

    scheduler = _scheduler(build_graph(_task("one", "print('hello')")), executor, on_event=observer)

    summary = scheduler.run()

    assert summary.succeeded == 1
    assert kinds[0] == EventKind.STARTED
    assert EventKind.OUTPUT in kinds
    assert kinds[-1] == EventKind.FINISHED


def test_concurrency_limit_validation(executor: ProcessExecutor) -> None:
    graph = build_graph(_task("one", "print()"))
    with pytest.raises(ValueError):
        Scheduler(graph, executor=executor, settings=SchedulerSettings(max_concurrency=0))

    scheduler = _scheduler(graph, executor)
    with pytest.raises(ValueError):
        scheduler.set_concurrency_limit(0)
    scheduler.set_concurrency_limit(1)
    assert scheduler.max_concurrency == 1


def test_empty_graph_finishes_immediately(executor: ProcessExecutor) -> None:
    summary = _scheduler(build_graph(), executor).run()

    assert summary.ok
    assert summary.succeeded == 0
