"""Error taxonomy for the simulation core.

Step- and attempt-level failures are raised and absorbed inside the execution
engine. Only configuration errors (cycles, unknown ids, illegal transitions)
escape to callers of the dispatcher.
"""

from __future__ import annotations


class SimulationError(Exception):
    """Base class for all simulation errors."""


class ObjectiveNotFoundError(SimulationError, KeyError):
    def __init__(self, objective_id: str) -> None:
        super().__init__(objective_id)
        self.objective_id = objective_id

    def __str__(self) -> str:
        return f"Objective {self.objective_id} not found"


class TaskNotFoundError(SimulationError, KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task {self.task_id} not found"


class InvalidTransitionError(SimulationError):
    """A lifecycle move that the status machine does not allow."""


class SimulationAlreadyRunningError(SimulationError):
    pass


class CyclicDependencyError(SimulationError):
    """Inserting the task would close a dependency cycle. Never retried."""

    def __init__(self, task_id: str, path: list[str]) -> None:
        super().__init__(f"Cyclic dependency detected: {' -> '.join(path)}")
        self.task_id = task_id
        self.path = path


class MissingDependencyError(SimulationError):
    """The task references ids absent from the graph and stays blocked."""

    def __init__(self, task_id: str, missing: list[str]) -> None:
        super().__init__(f"Task {task_id} depends on unknown tasks: {', '.join(missing)}")
        self.task_id = task_id
        self.missing = missing


class StepExecutionFailure(SimulationError):
    """A single plan step failed; adaptive steps get one adapted retry."""

    def __init__(self, step_name: str, message: str) -> None:
        super().__init__(f"{step_name}: {message}")
        self.step_name = step_name


class TaskAttemptFailure(SimulationError):
    """A whole attempt was aborted; retried with backoff while budget remains."""


class TaskExecutionTimeout(TaskAttemptFailure):
    """A step exceeded the absolute ceiling; fatal for the attempt."""


class ExecutionCancelled(SimulationError):
    """The enclosing simulation was stopped at a suspension point."""


class ObjectiveIterationExhausted(SimulationError):
    """The objective reached its iteration ceiling without completing."""

    def __init__(self, objective_id: str, iterations: int) -> None:
        super().__init__("maximum iterations reached")
        self.objective_id = objective_id
        self.iterations = iterations
