"""Task dependency graph: validation, readiness and status transitions."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Sequence

from gidterm.core.models import (
    FailureReason,
    ReportedStatus,
    Task,
    TaskDefinition,
    TaskStatus,
)

NAMESPACE_SEPARATOR = ":"

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED}),
    TaskStatus.SUCCEEDED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class GraphError(ValueError):
    """Base class for graph construction failures."""


class DuplicateTask(GraphError):
    """Two definitions resolve to the same task id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Duplicate task id: {task_id!r}")
        self.task_id = task_id


class UnknownDependency(GraphError):
    """A task depends on an id that is not part of the graph."""

    def __init__(self, task_id: str, dependency: str) -> None:
        super().__init__(f"Task {task_id!r} depends on unknown task {dependency!r}")
        self.task_id = task_id
        self.dependency = dependency


class CycleDetected(GraphError):
    """The dependency relation contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")
        self.cycle = list(cycle)


class InvalidTransition(RuntimeError):
    """A status change that the task lifecycle does not allow."""

    def __init__(self, task_id: str, current: TaskStatus, requested: TaskStatus, detail: str = ""):
        message = f"Task {task_id!r}: {current.value} -> {requested.value} is not allowed"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.task_id = task_id
        self.current = current
        self.requested = requested


def namespace_merge(project: str, definitions: Iterable[TaskDefinition]) -> list[TaskDefinition]:
    """Prefix task ids and bare dependency references with ``project:``.

    References that already contain the separator are explicit cross-project
    dependencies and are kept as written.
    """

    project = project.strip()
    if not project or NAMESPACE_SEPARATOR in project:
        raise GraphError(f"Invalid project name: {project!r}")

    merged: list[TaskDefinition] = []
    for definition in definitions:
        merged.append(
            TaskDefinition(
                name=_qualify(project, definition.name),
                command=definition.command,
                depends_on=tuple(
                    dependency
                    if NAMESPACE_SEPARATOR in dependency
                    else _qualify(project, dependency)
                    for dependency in definition.depends_on
                ),
                priority=definition.priority,
                task_type=definition.task_type,
                description=definition.description,
                cwd=definition.cwd,
                env=dict(definition.env),
            ),
        )
    return merged


def _qualify(project: str, name: str) -> str:
    return f"{project}{NAMESPACE_SEPARATOR}{name}"


class TaskGraph:
    """Arena of tasks with index-based dependency and dependent lists.

    The structure is fixed once built; only ``Task.status`` and
    ``Task.failure_reason`` change afterwards, and only through :meth:`mark`
    and :meth:`reset`. The graph performs no locking of its own: the
    scheduler serializes every call.
    """

    def __init__(self, tasks: list[Task]) -> None:
        self._tasks = tasks
        self._index = {task.task_id: index for index, task in enumerate(tasks)}
        self._dependencies: list[tuple[int, ...]] = [
            tuple(self._index[dep] for dep in task.depends_on) for task in tasks
        ]
        dependents: list[list[int]] = [[] for _ in tasks]
        for index, deps in enumerate(self._dependencies):
            for dep in deps:
                dependents[dep].append(index)
        self._dependents = [tuple(items) for items in dependents]
        self._order = self._compute_order()

    # -- construction ---------------------------------------------------------

    @classmethod
    def build(cls, definitions: Iterable[TaskDefinition]) -> TaskGraph:
        """Validate definitions and build the graph, or raise ``GraphError``."""

        tasks: list[Task] = []
        seen: set[str] = set()
        for order, definition in enumerate(definitions):
            task_id = definition.name.strip()
            if not task_id:
                raise GraphError(f"Task #{order} has an empty name")
            if task_id in seen:
                raise DuplicateTask(task_id)
            seen.add(task_id)
            depends_on = tuple(dict.fromkeys(dep.strip() for dep in definition.depends_on))
            tasks.append(
                Task(
                    task_id=task_id,
                    command=definition.command,
                    depends_on=depends_on,
                    priority=definition.priority,
                    task_type=definition.task_type,
                    order=order,
                    description=definition.description,
                    cwd=definition.cwd,
                    env=dict(definition.env),
                ),
            )

        for task in tasks:
            for dependency in task.depends_on:
                if dependency not in seen:
                    raise UnknownDependency(task.task_id, dependency)

        _check_acyclic(tasks)
        return cls(tasks)

    @classmethod
    def from_workspace(
        cls,
        projects: Iterable[tuple[str, Iterable[TaskDefinition]]],
    ) -> TaskGraph:
        """Namespace-merge several projects into a single graph."""

        merged: list[TaskDefinition] = []
        for project, definitions in projects:
            merged.extend(namespace_merge(project, definitions))
        return cls.build(merged)

    def _compute_order(self) -> tuple[int, ...]:
        """Kahn's algorithm; ties go to the earliest declared task."""

        remaining = [len(deps) for deps in self._dependencies]
        available = [index for index, count in enumerate(remaining) if count == 0]
        heapq.heapify(available)
        order: list[int] = []
        while available:
            index = heapq.heappop(available)
            order.append(index)
            for dependent in self._dependents[index]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(available, dependent)
        return tuple(order)

    @staticmethod
    def _reach(start: int, edges: list[tuple[int, ...]]) -> set[int]:
        reached: set[int] = set()
        stack = list(edges[start])
        while stack:
            index = stack.pop()
            if index in reached:
                continue
            reached.add(index)
            stack.extend(edges[index])
        return reached

    # -- lookup ---------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._index

    def __iter__(self):
        return iter(self._tasks)

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[self._index[task_id]]
        except KeyError as error:
            raise KeyError(f"Unknown task: {task_id!r}") from error

    def task_ids(self) -> list[str]:
        return [task.task_id for task in self._tasks]

    def dependencies(self, task_id: str) -> list[str]:
        return [self._tasks[i].task_id for i in self._dependencies[self._position(task_id)]]

    def dependents(self, task_id: str) -> list[str]:
        return [self._tasks[i].task_id for i in self._dependents[self._position(task_id)]]

    def ancestors(self, task_id: str) -> list[str]:
        return self._ids(self._reach(self._position(task_id), self._dependencies))

    def descendants(self, task_id: str) -> list[str]:
        return self._ids(self._reach(self._position(task_id), self._dependents))

    def topological_order(self) -> list[str]:
        """Dependencies first; ties keep declaration order."""

        return [self._tasks[index].task_id for index in self._order]

    def projects(self) -> list[str]:
        names: list[str] = []
        for task in self._tasks:
            project = task.project
            if project is not None and project not in names:
                names.append(project)
        return names

    def tasks_by_project(self, default_project: str = "default") -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for task in self._tasks:
            grouped.setdefault(task.project or default_project, []).append(task.task_id)
        return grouped

    # -- readiness ------------------------------------------------------------

    def ready_tasks(self) -> frozenset[str]:
        """Pending tasks whose dependencies all succeeded and no ancestor failed."""

        return frozenset(self._tasks[index].task_id for index in self._ready_indexes())

    def ready_queue(self) -> list[str]:
        """Ready tasks ordered by priority (highest first), then declaration order."""

        indexes = sorted(
            self._ready_indexes(),
            key=lambda index: (-self._tasks[index].priority, index),
        )
        return [self._tasks[index].task_id for index in indexes]

    def _ready_indexes(self) -> list[int]:
        failed_upstream = self._failed_upstream()
        ready: list[int] = []
        for index, task in enumerate(self._tasks):
            if task.status != TaskStatus.PENDING or failed_upstream[index]:
                continue
            if not all(
                self._tasks[dep].status == TaskStatus.SUCCEEDED
                for dep in self._dependencies[index]
            ):
                continue
            ready.append(index)
        return ready

    def _failed_upstream(self) -> list[bool]:
        """Per task: does any ancestor currently sit in ``failed``."""

        flags = [False] * len(self._tasks)
        for index in self._order:
            flags[index] = any(
                flags[dep] or self._tasks[dep].status == TaskStatus.FAILED
                for dep in self._dependencies[index]
            )
        return flags

    def is_blocked(self, task_id: str) -> bool:
        index = self._position(task_id)
        if self._tasks[index].status != TaskStatus.PENDING:
            return False
        ancestors = self._reach(index, self._dependencies)
        return any(self._tasks[ancestor].status == TaskStatus.FAILED for ancestor in ancestors)

    def blocked_tasks(self) -> frozenset[str]:
        failed_upstream = self._failed_upstream()
        return frozenset(
            task.task_id
            for index, task in enumerate(self._tasks)
            if task.status == TaskStatus.PENDING and failed_upstream[index]
        )

    def reported_status(self, task_id: str) -> ReportedStatus:
        task = self.get(task_id)
        if self.is_blocked(task_id):
            return ReportedStatus.BLOCKED
        return ReportedStatus(task.status.value)

    def running_tasks(self) -> list[str]:
        return [task.task_id for task in self._tasks if task.status == TaskStatus.RUNNING]

    def is_quiescent(self) -> bool:
        """True when nothing runs and nothing more can become ready."""

        return not self.running_tasks() and not self._ready_indexes()

    # -- mutation -------------------------------------------------------------

    def mark(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        reason: FailureReason | None = None,
    ) -> None:
        """Apply a one-way lifecycle transition or raise ``InvalidTransition``."""

        task = self.get(task_id)
        if status not in _ALLOWED_TRANSITIONS[task.status]:
            raise InvalidTransition(task_id, task.status, status)
        if task.status == TaskStatus.PENDING and status == TaskStatus.FAILED:
            if reason != FailureReason.SPAWN_ERROR:
                raise InvalidTransition(
                    task_id,
                    task.status,
                    status,
                    "only a spawn error may fail a task that never ran",
                )
        task.status = status
        task.failure_reason = reason if status == TaskStatus.FAILED else None

    def reset(self, task_id: str) -> None:
        """Explicit restart: put a finished task back to pending."""

        task = self.get(task_id)
        if task.status == TaskStatus.RUNNING:
            raise InvalidTransition(task_id, task.status, TaskStatus.PENDING, "task is running")
        running_dependents = [
            dependent
            for dependent in self.descendants(task_id)
            if self.get(dependent).status == TaskStatus.RUNNING
        ]
        if running_dependents:
            raise InvalidTransition(
                task_id,
                task.status,
                TaskStatus.PENDING,
                f"dependents running: {', '.join(running_dependents)}",
            )
        task.status = TaskStatus.PENDING
        task.failure_reason = None

    # -- helpers --------------------------------------------------------------

    def _position(self, task_id: str) -> int:
        try:
            return self._index[task_id]
        except KeyError as error:
            raise KeyError(f"Unknown task: {task_id!r}") from error

    def _ids(self, indexes: Iterable[int]) -> list[str]:
        return [self._tasks[index].task_id for index in sorted(indexes)]


def _check_acyclic(tasks: list[Task]) -> None:
    """Depth-first search with an on-stack marker; raises ``CycleDetected``."""

    index = {task.task_id: position for position, task in enumerate(tasks)}
    unvisited, on_stack, done = 0, 1, 2
    marks = [unvisited] * len(tasks)

    for root in range(len(tasks)):
        if marks[root] != unvisited:
            continue
        path: list[int] = [root]
        iterators = [iter(tasks[root].depends_on)]
        marks[root] = on_stack
        while iterators:
            dependency = next(iterators[-1], None)
            if dependency is None:
                marks[path.pop()] = done
                iterators.pop()
                continue
            target = index[dependency]
            if marks[target] == on_stack:
                start = path.index(target)
                cycle = [tasks[position].task_id for position in path[start:]]
                cycle.append(tasks[target].task_id)
                raise CycleDetected(cycle)
            if marks[target] == unvisited:
                marks[target] = on_stack
                path.append(target)
                iterators.append(iter(tasks[target].depends_on))
