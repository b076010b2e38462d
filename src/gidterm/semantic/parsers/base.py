"""Parser interface for output interpretation."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from gidterm.semantic.state import SemanticState


@runtime_checkable
class OutputParser(Protocol):
    """Protocol implemented by output parsers.

    Parsers hold no per-task state: everything they learn is carried in the
    ``SemanticState`` they return, so one instance can serve many tasks.
    """

    name: str

    def consume(self, lines: Sequence[str], state: SemanticState) -> SemanticState:
        """Fold complete output lines into ``state`` and return the new state."""
