"""Graph-driven task orchestrator with per-task pseudo-terminals."""

__version__ = "0.3.0"
