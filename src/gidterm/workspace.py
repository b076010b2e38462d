"""Loading ``.gid/graph.yml`` project files and multi-project workspaces."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from gidterm.core.graph import TaskGraph
from gidterm.core.models import TaskDefinition, parse_priority
from gidterm.semantic.parsers.pattern import PatternParser
from gidterm.semantic.registry import ParserRegistry, default_registry

logger = logging.getLogger(__name__)

GRAPH_RELATIVE_PATH = Path(".gid") / "graph.yml"


class WorkspaceError(ValueError):
    """Raised when a graph file or workspace layout cannot be loaded."""


@dataclass(slots=True)
class GraphFile:
    """Parsed contents of one project graph file."""

    project: str
    path: Path
    definitions: list[TaskDefinition]
    parsers: dict[str, dict[str, Any]] = field(default_factory=dict)


def load_graph_file(path: Path) -> GraphFile:
    """Read a graph file into task definitions.

    The project name comes from ``metadata.project`` and falls back to the
    name of the directory holding ``.gid``. Task ``cwd`` defaults to that
    directory; relative values are resolved against it.
    """

    path = Path(path)
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as error:
        raise WorkspaceError(f"Graph file not found: {path}") from error
    except yaml.YAMLError as error:
        raise WorkspaceError(f"Invalid YAML in {path}: {error}") from error

    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise WorkspaceError(f"{path}: top level must be a mapping")

    project_dir = _project_dir(path)
    metadata = payload.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise WorkspaceError(f"{path}: metadata must be a mapping")
    project = str(metadata.get("project") or project_dir.name).strip()

    tasks = payload.get("tasks") or {}
    if not isinstance(tasks, Mapping):
        raise WorkspaceError(f"{path}: tasks must be a mapping of name to task")
    definitions = [
        _to_definition(path, str(name), raw or {}, project_dir) for name, raw in tasks.items()
    ]

    parsers = payload.get("parsers") or {}
    if not isinstance(parsers, Mapping):
        raise WorkspaceError(f"{path}: parsers must be a mapping of name to parser")

    logger.debug("Loaded %d tasks for project %s from %s", len(definitions), project, path)
    return GraphFile(
        project=project,
        path=path,
        definitions=definitions,
        parsers={str(name): dict(raw or {}) for name, raw in parsers.items()},
    )


def discover_projects(root: Path) -> list[Path]:
    """Graph files under ``root`` itself and its immediate subdirectories."""

    root = Path(root)
    if not root.is_dir():
        raise WorkspaceError(f"Workspace directory not found: {root}")
    found: list[Path] = []
    own = root / GRAPH_RELATIVE_PATH
    if own.is_file():
        found.append(own)
    for child in sorted(root.iterdir(), key=lambda item: item.name):
        if child.is_dir() and not child.name.startswith("."):
            candidate = child / GRAPH_RELATIVE_PATH
            if candidate.is_file():
                found.append(candidate)
    return found


def load_project(path: Path) -> tuple[TaskGraph, list[GraphFile]]:
    """Single-project graph with task ids used exactly as written."""

    graph_file = load_graph_file(_resolve_graph_path(Path(path)))
    return TaskGraph.build(graph_file.definitions), [graph_file]


def load_workspace(root: Path) -> tuple[TaskGraph, list[GraphFile]]:
    """Namespace-merge every discovered project into one graph."""

    paths = discover_projects(root)
    if not paths:
        raise WorkspaceError(f"No {GRAPH_RELATIVE_PATH} files found under {root}")
    graph_files = [load_graph_file(path) for path in paths]
    names = [graph_file.project for graph_file in graph_files]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise WorkspaceError(f"Duplicate project names in workspace: {', '.join(duplicates)}")
    logger.info("Workspace %s: %d projects", root, len(graph_files))
    graph = TaskGraph.from_workspace(
        (graph_file.project, graph_file.definitions) for graph_file in graph_files
    )
    return graph, graph_files


def build_registry(graph_files: Iterable[GraphFile]) -> ParserRegistry:
    """Default registry extended with parsers declared in graph files.

    A declared parser serves its own name plus the task types listed under
    its ``types`` key.
    """

    registry = default_registry()
    for graph_file in graph_files:
        for name, declared in graph_file.parsers.items():
            raw = dict(declared)
            task_types = [str(item) for item in raw.pop("types", None) or ()]
            try:
                parser = PatternParser.from_mapping(name, raw)
            except ValueError as error:
                raise WorkspaceError(f"{graph_file.path}: parser {name!r}: {error}") from error
            registry.register(parser, task_types)
    return registry


def _resolve_graph_path(path: Path) -> Path:
    if path.is_dir():
        return path / GRAPH_RELATIVE_PATH
    return path


def _project_dir(path: Path) -> Path:
    parent = path.resolve().parent
    if parent.name == ".gid":
        return parent.parent
    return parent


def _to_definition(
    path: Path,
    name: str,
    raw: Mapping[str, Any],
    project_dir: Path,
) -> TaskDefinition:
    if not isinstance(raw, Mapping):
        raise WorkspaceError(f"{path}: task {name!r} must be a mapping")

    command = raw.get("command")
    if command is not None and not isinstance(command, str | list):
        raise WorkspaceError(f"{path}: task {name!r} command must be a string or list")
    if isinstance(command, list):
        command = [str(part) for part in command]

    depends_on = raw.get("depends_on") or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    try:
        priority = parse_priority(raw.get("priority"))
    except ValueError as error:
        raise WorkspaceError(f"{path}: task {name!r}: {error}") from error

    cwd = Path(raw["cwd"]) if raw.get("cwd") else project_dir
    if not cwd.is_absolute():
        cwd = project_dir / cwd

    env = raw.get("env") or {}
    if not isinstance(env, Mapping):
        raise WorkspaceError(f"{path}: task {name!r} env must be a mapping")

    return TaskDefinition(
        name=name,
        command=command,
        depends_on=tuple(str(dependency) for dependency in depends_on),
        priority=priority,
        task_type=str(raw["type"]) if raw.get("type") else None,
        description=str(raw.get("description") or ""),
        cwd=str(cwd),
        env={str(key): str(value) for key, value in env.items()},
    )
