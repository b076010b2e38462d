"""Pseudo-terminal process execution."""

from gidterm.executor.buffer import OutputBuffer, OutputChunk
from gidterm.executor.pty_executor import ProcessExecutor, ProcessHandle, SpawnError

__all__ = [
    "OutputBuffer",
    "OutputChunk",
    "ProcessExecutor",
    "ProcessHandle",
    "SpawnError",
]
