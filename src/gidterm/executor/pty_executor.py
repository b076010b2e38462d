"""Pseudo-terminal backed process runner for task commands."""

from __future__ import annotations

import logging
import os
import select
import shlex
import signal
import struct
import subprocess
import sys
import threading
from collections.abc import Mapping
from pathlib import Path

from gidterm.config import ExecutorSettings
from gidterm.core.models import Command, ExitOutcome
from gidterm.executor.buffer import OutputBuffer, OutputChunk

if sys.platform != "win32":
    import fcntl
    import pty
    import termios

logger = logging.getLogger(__name__)

_READ_POLL_SECONDS = 0.05
_READER_JOIN_SECONDS = 2.0


class SpawnError(RuntimeError):
    """The command could not be started."""

    def __init__(self, message: str, *, command_head: str | None = None) -> None:
        super().__init__(message)
        self.command_head = command_head


class ProcessExecutor:
    """Start task commands attached to their own pseudo-terminal."""

    def __init__(self, settings: ExecutorSettings | None = None) -> None:
        self.settings = settings or ExecutorSettings()

    def start(
        self,
        command: Command,
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle:
        """Spawn ``command`` on a fresh pty and start streaming its output."""

        if sys.platform == "win32":
            raise SpawnError("Pseudo-terminal execution requires a POSIX platform.")

        run_args, command_head = _build_run_args(command, shell=self.settings.shell)
        if cwd is not None and not Path(cwd).is_dir():
            raise SpawnError(f"Working directory does not exist: {cwd}", command_head=command_head)

        child_env = os.environ.copy() if self.settings.inherit_env else {}
        child_env.setdefault("TERM", "xterm-256color")
        child_env.update(env or {})

        master_fd, slave_fd = pty.openpty()
        _set_window_size(slave_fd, self.settings.terminal_rows, self.settings.terminal_cols)
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(cwd) if cwd is not None else None,
                env=child_env,
                start_new_session=True,
                close_fds=True,
                preexec_fn=_acquire_controlling_tty,  # noqa: PLW1509
            )
        except FileNotFoundError as error:
            os.close(master_fd)
            raise SpawnError(f"Command not found: {command_head}", command_head=command_head) from error
        except PermissionError as error:
            os.close(master_fd)
            raise SpawnError(
                f"Permission denied starting {command_head}",
                command_head=command_head,
            ) from error
        except (OSError, subprocess.SubprocessError) as error:
            os.close(master_fd)
            raise SpawnError(
                f"Failed to start {command_head}: {error}",
                command_head=command_head,
            ) from error
        finally:
            os.close(slave_fd)

        handle = ProcessHandle(
            process=process,
            master_fd=master_fd,
            buffer=OutputBuffer(self.settings.buffer_cap_bytes),
            read_chunk_bytes=self.settings.read_chunk_bytes,
            kill_grace_seconds=self.settings.kill_grace_seconds,
            command_head=command_head,
        )
        handle.start_reader()
        logger.debug("Spawned %s (pid %d)", command_head, process.pid)
        return handle


class ProcessHandle:
    """Live child process plus its terminal byte stream."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        process: subprocess.Popen[bytes],
        master_fd: int,
        buffer: OutputBuffer,
        read_chunk_bytes: int,
        kill_grace_seconds: float,
        command_head: str,
    ) -> None:
        self._process = process
        self._fd = master_fd
        self._fd_lock = threading.Lock()
        self._fd_closed = False
        self._read_chunk_bytes = read_chunk_bytes
        self._kill_grace_seconds = kill_grace_seconds
        self._termination_requested = threading.Event()
        self._kill_timer: threading.Timer | None = None
        self._timer_lock = threading.Lock()
        self._reader = threading.Thread(
            target=self._read_loop,
            daemon=True,
            name=f"pty-reader-{process.pid}",
        )
        self.output = buffer
        self.command_head = command_head

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def termination_requested(self) -> bool:
        return self._termination_requested.is_set()

    def start_reader(self) -> None:
        self._reader.start()

    def read(self, timeout: float | None = None) -> OutputChunk | None:
        """Next batch of terminal output, or ``None`` on timeout or end of stream."""

        return self.output.read(timeout)

    def write(self, data: bytes | str) -> int:
        """Send input to the child's terminal."""

        payload = data.encode("utf-8") if isinstance(data, str) else data
        with self._fd_lock:
            if self._fd_closed:
                raise BrokenPipeError(f"Terminal for pid {self.pid} is closed")
            return os.write(self._fd, payload)

    def poll(self) -> ExitOutcome | None:
        returncode = self._process.poll()
        if returncode is None:
            return None
        return _exit_outcome(returncode, cancelled=self.termination_requested)

    def wait(self, timeout: float | None = None) -> ExitOutcome | None:
        """Block the calling thread until exit; ``None`` if ``timeout`` elapses."""

        try:
            returncode = self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._cancel_kill_timer()
        self._reader.join(timeout=_READER_JOIN_SECONDS)
        return _exit_outcome(returncode, cancelled=self.termination_requested)

    def terminate(self, grace_seconds: float | None = None) -> None:
        """SIGTERM the process group, then SIGKILL once the grace period ends."""

        if self._process.poll() is not None:
            return
        self._termination_requested.set()
        self._signal_group(signal.SIGTERM)
        grace = self._kill_grace_seconds if grace_seconds is None else max(0.0, grace_seconds)
        with self._timer_lock:
            if self._kill_timer is not None:
                return
            self._kill_timer = threading.Timer(grace, self._escalate)
            self._kill_timer.daemon = True
            self._kill_timer.start()

    def kill(self) -> None:
        if self._process.poll() is not None:
            return
        self._termination_requested.set()
        self._signal_group(signal.SIGKILL)

    def _escalate(self) -> None:
        if self._process.poll() is None:
            logger.warning("pid %d ignored SIGTERM, sending SIGKILL", self.pid)
            self._signal_group(signal.SIGKILL)

    def _cancel_kill_timer(self) -> None:
        with self._timer_lock:
            if self._kill_timer is not None:
                self._kill_timer.cancel()

    def _signal_group(self, signum: int) -> None:
        try:
            os.killpg(self._process.pid, signum)
        except ProcessLookupError:
            return
        except PermissionError:
            try:
                self._process.send_signal(signum)
            except OSError:
                return

    def _read_loop(self) -> None:
        try:
            while True:
                try:
                    ready, _, _ = select.select([self._fd], [], [], _READ_POLL_SECONDS)
                except (OSError, ValueError):
                    break
                if ready:
                    try:
                        data = os.read(self._fd, self._read_chunk_bytes)
                    except OSError:
                        # EIO once every slave descriptor is closed.
                        break
                    if not data:
                        break
                    self.output.append(data)
                    continue
                if self._process.poll() is not None:
                    self._drain_remaining()
                    break
        finally:
            self.output.close()
            self._close_fd()

    def _drain_remaining(self) -> None:
        while True:
            try:
                ready, _, _ = select.select([self._fd], [], [], 0)
                if not ready:
                    return
                data = os.read(self._fd, self._read_chunk_bytes)
            except (OSError, ValueError):
                return
            if not data:
                return
            self.output.append(data)

    def _close_fd(self) -> None:
        with self._fd_lock:
            if self._fd_closed:
                return
            self._fd_closed = True
            try:
                os.close(self._fd)
            except OSError:
                return


def _build_run_args(command: Command, *, shell: str) -> tuple[list[str], str]:
    if command is None:
        raise SpawnError("Task command is empty.")
    if isinstance(command, str):
        stripped = command.strip()
        if not stripped:
            raise SpawnError("Task command is empty.")
        return [shell, "-c", stripped], _command_head(stripped)

    argv = [str(part) for part in command]
    if not argv or not argv[0].strip():
        raise SpawnError("Task command is empty.")
    return argv, argv[0]


def _command_head(command: str) -> str:
    try:
        parts = shlex.split(command)
    except ValueError:
        parts = command.split()
    return parts[0] if parts else command


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is already the pty slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _exit_outcome(returncode: int, *, cancelled: bool) -> ExitOutcome:
    if returncode < 0:
        return ExitOutcome(exit_code=None, signal=-returncode, cancelled=cancelled)
    return ExitOutcome(exit_code=returncode, signal=None, cancelled=cancelled)


def _set_window_size(fd: int, rows: int, cols: int) -> None:
    try:
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
    except OSError:
        logger.debug("Could not set terminal size on fd %d", fd, exc_info=True)
