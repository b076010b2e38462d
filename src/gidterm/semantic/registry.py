"""Parser registry: task-type annotation to parser selection."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from gidterm.semantic.parsers.agent import AgentParser
from gidterm.semantic.parsers.base import OutputParser
from gidterm.semantic.parsers.pattern import empty_parser, generic_parser
from gidterm.semantic.parsers.training import TrainingParser

logger = logging.getLogger(__name__)

GENERIC_TASK_TYPES: tuple[str, ...] = ("generic", "build", "test", "data_processing")
TRAINING_TASK_TYPES: tuple[str, ...] = ("ml_training", "deep_learning", "training")
AGENT_TASK_TYPES: tuple[str, ...] = ("agent", "claude", "claude-code", "codex", "opencode", "pi")


class ParserRegistry:
    """Named parsers plus the task types each one serves."""

    def __init__(self, fallback: OutputParser | None = None) -> None:
        self._parsers: dict[str, OutputParser] = {}
        self._type_mappings: dict[str, str] = {}
        self._fallback = fallback or empty_parser()

    @property
    def fallback(self) -> OutputParser:
        return self._fallback

    def register(self, parser: OutputParser, task_types: Iterable[str] = ()) -> None:
        """Add ``parser`` and route ``task_types`` (and its own name) to it."""

        self._parsers[parser.name] = parser
        self._type_mappings[parser.name.lower()] = parser.name
        for task_type in task_types:
            self._type_mappings[task_type.strip().lower()] = parser.name

    def get(self, name: str) -> OutputParser | None:
        return self._parsers.get(name)

    def for_task_type(self, task_type: str | None) -> OutputParser:
        """Parser for an annotation; unknown or missing annotations get the fallback."""

        if task_type is None or not task_type.strip():
            return self._fallback
        parser_name = self._type_mappings.get(task_type.strip().lower())
        if parser_name is None:
            logger.warning("No parser registered for task type %r, capturing raw output", task_type)
            return self._fallback
        return self._parsers[parser_name]

    def names(self) -> list[str]:
        return sorted(self._parsers)

    def task_types(self) -> dict[str, str]:
        return dict(sorted(self._type_mappings.items()))


def default_registry() -> ParserRegistry:
    """Registry with the built-in generic, training and agent parsers."""

    registry = ParserRegistry()
    registry.register(generic_parser(), GENERIC_TASK_TYPES)
    registry.register(TrainingParser(), TRAINING_TASK_TYPES)
    registry.register(AgentParser(), AGENT_TASK_TYPES)
    return registry
