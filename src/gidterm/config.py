"""Runtime configuration for the scheduler, executor and run history."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class SchedulerSettings:
    """Control loop settings."""

    max_concurrency: int = 4
    poll_interval_seconds: float = 0.1
    shutdown_grace_seconds: float = 5.0


@dataclass(slots=True)
class ExecutorSettings:
    """Pseudo-terminal process settings."""

    shell: str = "/bin/sh"
    buffer_cap_bytes: int = 1_048_576
    read_chunk_bytes: int = 65_536
    terminal_rows: int = 24
    terminal_cols: int = 120
    kill_grace_seconds: float = 5.0
    inherit_env: bool = True


@dataclass(slots=True)
class HistorySettings:
    """Run history persistence settings."""

    db_path: Path = Path(".gidterm/history.db")
    output_tail_lines: int = 500
    enabled: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    history: HistorySettings = field(default_factory=HistorySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        return cls(
            scheduler=SchedulerSettings(
                max_concurrency=int(os.getenv("GIDTERM_MAX_CONCURRENCY", "4")),
                poll_interval_seconds=float(os.getenv("GIDTERM_POLL_INTERVAL_SECONDS", "0.1")),
                shutdown_grace_seconds=float(
                    os.getenv("GIDTERM_SHUTDOWN_GRACE_SECONDS", "5.0"),
                ),
            ),
            executor=ExecutorSettings(
                shell=os.getenv("GIDTERM_SHELL", "/bin/sh"),
                buffer_cap_bytes=int(os.getenv("GIDTERM_BUFFER_CAP_BYTES", "1048576")),
                read_chunk_bytes=int(os.getenv("GIDTERM_READ_CHUNK_BYTES", "65536")),
                terminal_rows=int(os.getenv("GIDTERM_TERMINAL_ROWS", "24")),
                terminal_cols=int(os.getenv("GIDTERM_TERMINAL_COLS", "120")),
                kill_grace_seconds=float(os.getenv("GIDTERM_KILL_GRACE_SECONDS", "5.0")),
                inherit_env=_env_bool("GIDTERM_INHERIT_ENV", default=True),
            ),
            history=HistorySettings(
                db_path=db_path or Path(os.getenv("GIDTERM_DB_PATH", ".gidterm/history.db")),
                output_tail_lines=int(os.getenv("GIDTERM_OUTPUT_TAIL_LINES", "500")),
                enabled=_env_bool("GIDTERM_HISTORY_ENABLED", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot honour."""

        if self.scheduler.max_concurrency <= 0:
            raise ValueError("GIDTERM_MAX_CONCURRENCY must be a positive integer.")
        if self.scheduler.poll_interval_seconds <= 0:
            raise ValueError("GIDTERM_POLL_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.shutdown_grace_seconds < 0:
            raise ValueError("GIDTERM_SHUTDOWN_GRACE_SECONDS must be >= 0.")
        if not self.executor.shell.strip():
            raise ValueError("GIDTERM_SHELL must not be empty.")
        if self.executor.buffer_cap_bytes <= 0:
            raise ValueError("GIDTERM_BUFFER_CAP_BYTES must be a positive integer.")
        if self.executor.read_chunk_bytes <= 0:
            raise ValueError("GIDTERM_READ_CHUNK_BYTES must be a positive integer.")
        if self.executor.terminal_rows <= 0 or self.executor.terminal_cols <= 0:
            raise ValueError("GIDTERM_TERMINAL_ROWS and GIDTERM_TERMINAL_COLS must be > 0.")
        if self.executor.kill_grace_seconds < 0:
            raise ValueError("GIDTERM_KILL_GRACE_SECONDS must be >= 0.")
        if self.history.output_tail_lines <= 0:
            raise ValueError("GIDTERM_OUTPUT_TAIL_LINES must be a positive integer.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
