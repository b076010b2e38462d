from __future__ import annotations

import signal
import time

import allure
import pytest
from conftest import pty_only, python_command

from gidterm.config import ExecutorSettings
from gidterm.executor.pty_executor import ProcessExecutor, ProcessHandle, SpawnError

pytestmark = [
    allure.epic("Process Execution"),
    allure.feature("Pseudo-terminal Processes"),
    pty_only,
]


def _drain(handle: ProcessHandle, timeout: float = 10.0) -> bytes:
    collected = bytearray()
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        chunk = handle.read(timeout=0.1)
        if chunk is None:
            if handle.output.exhausted():
                break
            continue
        collected.extend(chunk.data)
    return bytes(collected)


def test_child_sees_a_terminal_and_output_is_captured(executor: ProcessExecutor) -> None:
    handle = executor.start(python_command("import sys; print('tty', sys.stdout.isatty())"))

    output = _drain(handle)
    outcome = handle.wait(timeout=10)

    assert b"tty True" in output
    assert outcome is not None
    assert outcome.exit_code == 0
    assert outcome.succeeded


def test_pty_is_the_controlling_terminal(executor: ProcessExecutor) -> None:
    handle = executor.start("echo through-tty > /dev/tty")

    output = _drain(handle)
    outcome = handle.wait(timeout=10)

    assert b"through-tty" in output
    assert outcome is not None
    assert outcome.exit_code == 0


def test_ctrl_c_on_the_terminal_interrupts_the_child(executor: ProcessExecutor) -> None:
    handle = executor.start(python_command("import time; print('ready', flush=True); time.sleep(60)"))
    assert handle.read(timeout=10) is not None

    handle.write(b"\x03")
    outcome = handle.wait(timeout=10)

    assert outcome is not None
    assert outcome.signal == signal.SIGINT
    assert not outcome.cancelled


def test_output_written_right_before_exit_is_kept(executor: ProcessExecutor) -> None:
    for _ in range(5):
        handle = executor.start(
            python_command("import sys; sys.stdout.write('tail-marker'); sys.stdout.flush()"),
        )
        output = _drain(handle)
        assert handle.wait(timeout=10).exit_code == 0
        assert b"tail-marker" in output


def test_non_zero_exit_code_is_reported(executor: ProcessExecutor) -> None:
    handle = executor.start(python_command("import sys; sys.exit(3)"))
    _drain(handle)

    outcome = handle.wait(timeout=10)

    assert outcome is not None
    assert outcome.exit_code == 3
    assert not outcome.succeeded


def test_shell_string_commands_run_through_the_shell(executor: ProcessExecutor) -> None:
    handle = executor.start("echo first && echo second")

    output = _drain(handle)

    assert b"first" in output and b"second" in output
    assert handle.wait(timeout=10).exit_code == 0


def test_env_and_cwd_are_applied(executor: ProcessExecutor, tmp_path) -> None:
    handle = executor.start(
        python_command("import os; print(os.environ['GIDTERM_TEST'], os.getcwd())"),
        cwd=tmp_path,
        env={"GIDTERM_TEST": "marker"},
    )

    output = _drain(handle).decode()

    assert "marker" in output
    assert str(tmp_path.resolve()) in output or str(tmp_path) in output


def test_missing_executable_is_a_spawn_error(executor: ProcessExecutor) -> None:
    with pytest.raises(SpawnError, match="Command not found"):
        executor.start(["/nonexistent/definitely-not-a-binary"])


def test_missing_working_directory_is_a_spawn_error(executor: ProcessExecutor, tmp_path) -> None:
    with pytest.raises(SpawnError, match="Working directory"):
        executor.start("true", cwd=tmp_path / "missing")


@pytest.mark.parametrize("command", [None, "", "   ", []])
def test_empty_command_is_a_spawn_error(executor: ProcessExecutor, command) -> None:
    with pytest.raises(SpawnError, match="empty"):
        executor.start(command)


def test_input_is_delivered_to_the_child(executor: ProcessExecutor) -> None:
    handle = executor.start(python_command("line = input(); print('got', line)"))

    handle.write("hello\n")
    output = _drain(handle)

    assert b"got hello" in output
    assert handle.wait(timeout=10).exit_code == 0


def test_terminate_marks_the_outcome_cancelled(executor: ProcessExecutor) -> None:
    handle = executor.start(python_command("import time; print('ready', flush=True); time.sleep(60)"))
    assert handle.read(timeout=10) is not None

    handle.terminate()
    outcome = handle.wait(timeout=10)

    assert outcome is not None
    assert outcome.cancelled
    assert not outcome.succeeded


def test_sigterm_ignoring_child_is_killed_after_grace() -> None:
    executor = ProcessExecutor(ExecutorSettings(kill_grace_seconds=0.3))
    handle = executor.start(
        python_command(
            """
            import signal, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print('armed', flush=True)
            time.sleep(60)
            """,
        ),
    )
    assert handle.read(timeout=10) is not None

    handle.terminate()
    outcome = handle.wait(timeout=10)

    assert outcome is not None
    assert outcome.signal == 9
    assert outcome.cancelled


def test_small_buffer_reports_dropped_bytes() -> None:
    executor = ProcessExecutor(ExecutorSettings(buffer_cap_bytes=64))
    handle = executor.start(
        python_command("import sys, time; sys.stdout.write('x' * 20000); sys.stdout.flush()"),
    )
    time.sleep(0.5)

    dropped = 0
    while True:
        chunk = handle.read(timeout=0.2)
        if chunk is None:
            if handle.output.exhausted():
                break
            continue
        dropped += chunk.dropped
        assert len(chunk.data) <= 64

    assert dropped > 0
    assert handle.wait(timeout=10).exit_code == 0
