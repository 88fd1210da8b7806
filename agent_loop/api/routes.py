"""FastAPI route definitions for the agent loop control API.

Routes translate domain errors into the ``ErrorResponse`` envelope; all
orchestration happens in the injected dispatcher.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import ValidationError

from shared.metrics import latest_statistics
from shared.schemas import (
    AddTaskResponse,
    ErrorCode,
    ErrorResponse,
    LearningInsight,
    Objective,
    ObjectiveCreate,
    SimulationSettings,
    SimulationStatistics,
    StartSimulationRequest,
    Task,
    TaskCreate,
)

from ..core.errors import (
    CyclicDependencyError,
    InvalidTransitionError,
    ObjectiveNotFoundError,
    SimulationAlreadyRunningError,
    SimulationError,
    TaskNotFoundError,
)

router = APIRouter()


def get_dispatcher():
    """Dependency placeholder for injecting the dispatcher service."""
    raise NotImplementedError("Dispatcher dependency must be wired in main.py")


def _error(status_code: int, code: ErrorCode, message: str, **details: Any) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(code=code, message=message, details=details or None).model_dump(mode="json"),
    )


def _translate(exc: SimulationError) -> HTTPException:
    if isinstance(exc, (ObjectiveNotFoundError, TaskNotFoundError)):
        return _error(status.HTTP_404_NOT_FOUND, ErrorCode.NOT_FOUND, str(exc))
    if isinstance(exc, CyclicDependencyError):
        return _error(
            status.HTTP_409_CONFLICT, ErrorCode.CYCLIC_DEPENDENCY, str(exc), path=exc.path
        )
    if isinstance(exc, SimulationAlreadyRunningError):
        return _error(status.HTTP_409_CONFLICT, ErrorCode.SIMULATION_RUNNING, str(exc))
    if isinstance(exc, InvalidTransitionError):
        return _error(status.HTTP_409_CONFLICT, ErrorCode.INVALID_TRANSITION, str(exc))
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.INTERNAL_ERROR, str(exc))


@router.get("/health")
async def health(dispatcher=Depends(get_dispatcher)):
    return {"status": "ok", "running": dispatcher.running}


@router.post("/objectives", response_model=Objective, status_code=status.HTTP_201_CREATED)
async def create_objective(payload: ObjectiveCreate, dispatcher=Depends(get_dispatcher)):
    return await dispatcher.add_objective(payload)


@router.get("/objectives/{objective_id}")
async def get_objective(objective_id: str, dispatcher=Depends(get_dispatcher)):
    """Objective with its tasks in creation order."""
    try:
        objective = dispatcher.get_objective(objective_id)
        tasks = dispatcher.get_tasks(objective_id)
    except SimulationError as exc:
        raise _translate(exc) from exc
    return {
        "objective": objective.model_dump(mode="json"),
        "tasks": [task.model_dump(mode="json") for task in tasks],
    }


@router.post(
    "/objectives/{objective_id}/tasks",
    response_model=AddTaskResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_task(objective_id: str, payload: TaskCreate, dispatcher=Depends(get_dispatcher)):
    try:
        return await dispatcher.add_task(objective_id, payload)
    except SimulationError as exc:
        raise _translate(exc) from exc


@router.post("/tasks/{task_id}/reset", response_model=Task)
async def reset_task(task_id: str, dispatcher=Depends(get_dispatcher)):
    """Return a finished task to pending for a manual retry."""
    try:
        return await dispatcher.reset_task(task_id)
    except SimulationError as exc:
        raise _translate(exc) from exc


@router.post("/simulation/start", status_code=status.HTTP_202_ACCEPTED)
async def start_simulation(payload: StartSimulationRequest, dispatcher=Depends(get_dispatcher)):
    try:
        await dispatcher.start_simulation(payload.objective_id)
    except SimulationError as exc:
        raise _translate(exc) from exc
    return {"status": "started", "objective_id": payload.objective_id}


@router.post("/simulation/stop")
async def stop_simulation(dispatcher=Depends(get_dispatcher)):
    stopped = await dispatcher.stop_simulation()
    return {"status": "stopped" if stopped else "idle"}


@router.put("/settings", response_model=SimulationSettings)
async def update_settings(
    update: dict[str, Any] = Body(...),
    dispatcher=Depends(get_dispatcher),
):
    try:
        return await dispatcher.update_settings(update)
    except ValidationError as exc:
        raise _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorCode.VALIDATION_ERROR,
            "Invalid simulation settings.",
            errors=exc.errors(include_url=False, include_context=False),
        ) from exc


@router.get("/insights", response_model=list[LearningInsight])
async def list_insights(
    limit: int = 50,
    task_title: str | None = None,
    dispatcher=Depends(get_dispatcher),
):
    """Persisted insights, or the confident ones matching ``task_title``'s task type."""
    if task_title:
        return dispatcher.learning.relevant_insights(task_title, limit)
    return await dispatcher.memory.get_insights(limit)


@router.get("/statistics", response_model=SimulationStatistics)
async def get_statistics(dispatcher=Depends(get_dispatcher)):
    return dispatcher.statistics()


@router.get("/statistics/{objective_id}", response_model=SimulationStatistics)
async def get_objective_statistics(objective_id: str, dispatcher=Depends(get_dispatcher)):
    """Snapshot recorded at the last iteration boundary, live figures before the first."""
    try:
        dispatcher.get_objective(objective_id)
    except SimulationError as exc:
        raise _translate(exc) from exc
    return await latest_statistics(dispatcher.memory, objective_id, dispatcher.statistics)


@router.get("/memory/objectives/{objective_id}/tasks", response_model=list[Task])
async def list_persisted_tasks(objective_id: str, dispatcher=Depends(get_dispatcher)):
    """Task snapshots held by the memory adapter, including ones from earlier processes."""
    return await dispatcher.memory.get_tasks(objective_id)


@router.get("/executions")
async def list_executions(dispatcher=Depends(get_dispatcher)):
    engine = dispatcher.engine
    return {
        "metrics": engine.metrics().model_dump(mode="json"),
        "active": [record.model_dump(mode="json") for record in engine.active_executions()],
        "history": [record.model_dump(mode="json") for record in engine.execution_history()],
    }
