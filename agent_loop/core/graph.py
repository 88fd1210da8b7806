"""Objective/task graph store with lifecycle enforcement.

The graph is the single owner of ``Objective`` and ``Task`` instances. Every
status change goes through it so the dependency invariant (a task runs only
after all of its dependencies completed) and the status machines hold for
every caller.
"""

from __future__ import annotations

import logging

from shared.schemas import Objective, Task, WorkStatus, utcnow

from .errors import (
    InvalidTransitionError,
    ObjectiveNotFoundError,
    SimulationError,
    TaskNotFoundError,
)
from .resolver import check_acyclic, dependencies_satisfied, missing_dependencies

logger = logging.getLogger(__name__)

_OBJECTIVE_TRANSITIONS: dict[WorkStatus, set[WorkStatus]] = {
    WorkStatus.PENDING: {WorkStatus.IN_PROGRESS},
    WorkStatus.IN_PROGRESS: {WorkStatus.COMPLETED, WorkStatus.FAILED},
    WorkStatus.COMPLETED: set(),
    WorkStatus.FAILED: set(),
}

_TASK_TRANSITIONS: dict[WorkStatus, set[WorkStatus]] = {
    WorkStatus.PENDING: {WorkStatus.IN_PROGRESS},
    WorkStatus.IN_PROGRESS: {
        WorkStatus.IN_PROGRESS,
        WorkStatus.COMPLETED,
        WorkStatus.FAILED,
        WorkStatus.PENDING,
    },
    WorkStatus.COMPLETED: {WorkStatus.PENDING},
    WorkStatus.FAILED: {WorkStatus.PENDING},
}


class TaskGraph:
    def __init__(self) -> None:
        self._objectives: dict[str, Objective] = {}
        self._tasks: dict[str, Task] = {}

    # Objectives

    def add_objective(self, objective: Objective) -> Objective:
        if objective.id in self._objectives:
            raise SimulationError(f"Objective {objective.id} already exists")
        self._objectives[objective.id] = objective
        return objective

    def objective(self, objective_id: str) -> Objective:
        try:
            return self._objectives[objective_id]
        except KeyError:
            raise ObjectiveNotFoundError(objective_id) from None

    def objectives(self) -> list[Objective]:
        return list(self._objectives.values())

    def transition_objective(self, objective_id: str, status: WorkStatus) -> Objective:
        objective = self.objective(objective_id)
        if status not in _OBJECTIVE_TRANSITIONS[objective.status]:
            raise InvalidTransitionError(
                f"Objective {objective_id} cannot move from {objective.status.value} to {status.value}"
            )
        objective.status = status
        if status.is_terminal:
            objective.completed_at = utcnow()
        return objective

    # Tasks

    def task(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise TaskNotFoundError(task_id) from None

    def task_index(self) -> dict[str, Task]:
        return self._tasks

    def tasks_for(self, objective_id: str) -> list[Task]:
        objective = self.objective(objective_id)
        return [self._tasks[task_id] for task_id in objective.task_ids]

    def has_open_work(self, objective_id: str) -> bool:
        return any(not task.status.is_terminal for task in self.tasks_for(objective_id))

    def add_task(self, task: Task) -> list[str]:
        """Admit ``task`` into the graph and return any unknown dependency ids.

        Raises ``CyclicDependencyError`` without mutating the graph when the
        task's dependency chain reaches back to itself.
        """
        objective = self.objective(task.objective_id)
        if objective.status.is_terminal:
            raise InvalidTransitionError(
                f"Objective {objective.id} is {objective.status.value}; no new tasks accepted"
            )
        if task.id in self._tasks:
            raise SimulationError(f"Task {task.id} already exists")
        check_acyclic(task, self._tasks)

        self._tasks[task.id] = task
        objective.task_ids.append(task.id)
        missing = missing_dependencies(task, self._tasks)
        if missing:
            logger.warning("Task %s is blocked by unknown dependencies %s", task.id, missing)
        return missing

    def transition_task(self, task_id: str, status: WorkStatus) -> Task:
        task = self.task(task_id)
        if status not in _TASK_TRANSITIONS[task.status]:
            raise InvalidTransitionError(
                f"Task {task_id} cannot move from {task.status.value} to {status.value}"
            )
        if status == WorkStatus.IN_PROGRESS and not dependencies_satisfied(task, self._tasks):
            raise InvalidTransitionError(
                f"Task {task_id} has dependencies that are not completed"
            )
        task.status = status
        return task

    def reset_task(self, task_id: str) -> Task:
        """Return a task to ``pending`` for a manual retry."""
        task = self.task(task_id)
        if task.status == WorkStatus.IN_PROGRESS:
            raise InvalidTransitionError(f"Task {task_id} is executing and cannot be reset")
        if task.status != WorkStatus.PENDING:
            self.transition_task(task_id, WorkStatus.PENDING)
        task.progress = 0
        task.attempts = 0
        task.started_at = None
        task.completed_at = None
        task.actual_duration = None
        task.result = None
        task.failure_reason = None
        return task
