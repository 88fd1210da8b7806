"""Dependency resolution over a task graph."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from shared.schemas import Task, WorkStatus

from .errors import CyclicDependencyError, MissingDependencyError

if TYPE_CHECKING:
    from .graph import TaskGraph


def find_cycle(candidate: Task, tasks: Mapping[str, Task]) -> list[str] | None:
    """Depth-first walk from ``candidate``; return the cycle path if one closes.

    The walk keeps an explicit stack so chain depth is not bounded by the
    interpreter's recursion limit.
    """
    index = {**tasks, candidate.id: candidate}
    path: list[str] = [candidate.id]
    on_path: set[str] = {candidate.id}
    finished: set[str] = set()
    pending: list[Iterator[str]] = [iter(candidate.dependencies)]

    while pending:
        dep_id = next(pending[-1], None)
        if dep_id is None:
            pending.pop()
            done = path.pop()
            on_path.discard(done)
            finished.add(done)
            continue
        if dep_id in on_path:
            return path[path.index(dep_id):] + [dep_id]
        if dep_id in finished or dep_id not in index:
            continue
        path.append(dep_id)
        on_path.add(dep_id)
        pending.append(iter(index[dep_id].dependencies))
    return None


def check_acyclic(candidate: Task, tasks: Mapping[str, Task]) -> None:
    cycle = find_cycle(candidate, tasks)
    if cycle:
        raise CyclicDependencyError(candidate.id, cycle)


def missing_dependencies(task: Task, tasks: Mapping[str, Task]) -> list[str]:
    return [dep_id for dep_id in task.dependencies if dep_id not in tasks]


def dependencies_satisfied(task: Task, tasks: Mapping[str, Task]) -> bool:
    return all(
        dep_id in tasks and tasks[dep_id].status == WorkStatus.COMPLETED
        for dep_id in task.dependencies
    )


@dataclass(slots=True)
class DependencyResolver:
    """Computes the executable frontier of a task graph."""

    graph: TaskGraph

    def frontier(self, tasks: Iterable[Task], limit: int | None = None) -> list[Task]:
        """Pending tasks with every dependency completed.

        Ordered by priority (desc) then estimated duration (asc); remaining
        ties keep creation order, so repeated calls without state changes
        return the same list.
        """
        index = self.graph.task_index()
        ready = [
            task
            for task in tasks
            if task.status == WorkStatus.PENDING and dependencies_satisfied(task, index)
        ]
        ready.sort(key=lambda task: (-task.priority, task.estimated_duration))
        if limit is not None:
            return ready[: max(limit, 0)]
        return ready

    def executable(self, objective_id: str, limit: int | None = None) -> list[Task]:
        return self.frontier(self.graph.tasks_for(objective_id), limit)

    def blocked(self, objective_id: str) -> list[MissingDependencyError]:
        """Pending tasks that can never run because a dependency id is unknown."""
        index = self.graph.task_index()
        errors: list[MissingDependencyError] = []
        for task in self.graph.tasks_for(objective_id):
            if task.status != WorkStatus.PENDING:
                continue
            missing = missing_dependencies(task, index)
            if missing:
                errors.append(MissingDependencyError(task.id, missing))
        return errors

