"""Shared test fixtures."""

from __future__ import annotations

import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from gidterm.config import ExecutorSettings, SchedulerSettings
from gidterm.core.graph import TaskGraph
from gidterm.core.models import TaskDefinition
from gidterm.executor.pty_executor import ProcessExecutor

pty_only = pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX pty")


def python_command(code: str) -> list[str]:
    """Argv running ``code`` with the current interpreter."""

    return [sys.executable, "-c", textwrap.dedent(code)]


def build_graph(*definitions: TaskDefinition) -> TaskGraph:
    return TaskGraph.build(definitions)


@pytest.fixture()
def executor() -> ProcessExecutor:
    return ProcessExecutor(ExecutorSettings(kill_grace_seconds=1.0))


@pytest.fixture()
def fast_scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings(max_concurrency=4, poll_interval_seconds=0.02, shutdown_grace_seconds=2.0)


@pytest.fixture()
def event_log() -> tuple[list, Callable[[object], None]]:
    events: list = []
    return events, events.append


@pytest.fixture()
def write_graph(tmp_path: Path) -> Callable[..., Path]:
    """Write ``<dir>/.gid/graph.yml`` and return its path."""

    def _write(content: str, *, directory: Path | None = None) -> Path:
        project_dir = directory or tmp_path
        graph_path = project_dir / ".gid" / "graph.yml"
        graph_path.parent.mkdir(parents=True, exist_ok=True)
        graph_path.write_text(textwrap.dedent(content), encoding="utf-8")
        return graph_path

    return _write
