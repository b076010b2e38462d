"""Built-in output parsers."""

from gidterm.semantic.parsers.agent import AgentParser
from gidterm.semantic.parsers.base import OutputParser
from gidterm.semantic.parsers.pattern import (
    IssuePattern,
    PatternParser,
    PatternRule,
    ProgressPattern,
    ValueType,
    empty_parser,
    generic_parser,
)
from gidterm.semantic.parsers.training import TrainingParser

__all__ = [
    "AgentParser",
    "IssuePattern",
    "OutputParser",
    "PatternParser",
    "PatternRule",
    "ProgressPattern",
    "TrainingParser",
    "ValueType",
    "empty_parser",
    "generic_parser",
]
