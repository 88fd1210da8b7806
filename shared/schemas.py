"""Shared data contracts for the adaptive agent loop.

These models are intentionally colocated so the orchestration loop, the
execution engine, the learning system, and the HTTP surface agree on the
shape of objectives, tasks, insights, and events. They double as
documentation for the control API.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, conint, constr


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_id() -> str:
    return uuid4().hex


class ErrorCode(str, Enum):
    """Enumerates well-known error categories for HTTP responses."""

    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    CYCLIC_DEPENDENCY = "cyclic_dependency"
    INVALID_TRANSITION = "invalid_transition"
    SIMULATION_RUNNING = "simulation_running"
    INTERNAL_ERROR = "internal_error"


class ErrorResponse(BaseModel):
    """Consistent error envelope returned by the control API."""

    code: ErrorCode
    message: str
    details: dict[str, Any] | None = None


class WorkStatus(str, Enum):
    """Lifecycle status shared by objectives and tasks."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkStatus.COMPLETED, WorkStatus.FAILED)


class InsightCategory(str, Enum):
    STRATEGY = "strategy"
    TIMING = "timing"
    DEPENDENCIES = "dependencies"
    PRIORITY = "priority"


class LearningInsight(BaseModel):
    """Confidence-scored observation derived from execution history."""

    id: str = Field(default_factory=new_id)
    category: InsightCategory
    insight: str
    confidence: float = Field(ge=0.0, le=1.0)
    applied_to_next_tasks: bool = False
    pattern_key: str | None = Field(
        default=None, description="Pattern bucket the insight was derived for."
    )
    task_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ObjectiveCreate(BaseModel):
    """Payload accepted by ``add_objective``."""

    title: constr(strip_whitespace=True, min_length=1)
    description: str = ""
    complexity: conint(ge=1, le=10) = 5


class Objective(BaseModel):
    """Top-level goal decomposed into tasks."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    complexity: int = Field(ge=1, le=10)
    status: WorkStatus = WorkStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    result: str | None = None
    task_ids: list[str] = Field(
        default_factory=list, description="Owned task ids in creation order."
    )
    iterations: int = Field(default=0, ge=0)


class TaskCreate(BaseModel):
    """Payload accepted by ``add_task`` and produced by decomposition."""

    title: constr(strip_whitespace=True, min_length=1)
    description: str = ""
    priority: conint(ge=1, le=10) = 5
    complexity: conint(ge=1, le=10) = 5
    estimated_duration: float = Field(default=30.0, gt=0, description="Time units.")
    dependencies: list[str] = Field(default_factory=list)


class Task(BaseModel):
    """Atomic unit of simulated work."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_id)
    objective_id: str
    title: str
    description: str = ""
    priority: int = Field(ge=1, le=10)
    complexity: int = Field(ge=1, le=10)
    status: WorkStatus = WorkStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    estimated_duration: float = Field(gt=0)
    actual_duration: float | None = Field(default=None, ge=0)
    attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    dependencies: list[str] = Field(default_factory=list)
    result: str | None = None
    learning: LearningInsight | None = None
    failure_reason: str | None = None


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ExecutionLog(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ExecutionRecord(BaseModel):
    """Per-attempt execution state tracked by the engine."""

    task_id: str
    attempt: int
    current_step: str = "Initializing"
    progress: int = 0
    logs: list[ExecutionLog] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    elapsed: float = Field(default=0.0, description="Simulated time units consumed.")
    outcome: Literal["completed", "failed", "aborted", "cancelled"] | None = None


class ExecutionMetrics(BaseModel):
    total_executions: int
    successful_executions: int
    success_rate: float
    average_duration: float
    active_executions: int


class PatternBucket(BaseModel):
    """Historical performance accumulated for one pattern key."""

    key: str
    task_type: str
    occurrences: int = 0
    successes: int = 0
    total_duration: float = 0.0
    avg_complexity: float = 0.0
    avg_dependencies: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.occurrences if self.occurrences else 0.0

    @property
    def avg_duration(self) -> float:
        return self.total_duration / self.occurrences if self.occurrences else 0.0


class LearningSnapshot(BaseModel):
    """Exportable state of the learning system."""

    insights: list[LearningInsight] = Field(default_factory=list)
    patterns: list[PatternBucket] = Field(default_factory=list)
    exported_at: datetime = Field(default_factory=utcnow)


class StrategicRecommendation(BaseModel):
    type: str
    priority: Literal["low", "medium", "high"]
    description: str
    implementation: str
    expected_impact: str


class SimulationSpeed(str, Enum):
    SLOW = "slow"
    NORMAL = "normal"
    FAST = "fast"


ITERATION_DELAYS_MS: dict[SimulationSpeed, int] = {
    SimulationSpeed.SLOW: 3000,
    SimulationSpeed.NORMAL: 2000,
    SimulationSpeed.FAST: 1000,
}


class SimulationSettings(BaseModel):
    """Runtime knobs consumed read-only by the loop and the engine."""

    max_iterations: int = Field(default=10, ge=1, le=1000)
    simulation_speed: SimulationSpeed = SimulationSpeed.NORMAL
    concurrency_limit: int = Field(default=3, ge=1, le=10)
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_ms: float = Field(default=500.0, ge=0.0)
    micro_steps: int = Field(default=10, ge=1, le=100)
    step_timeout: float = Field(
        default=300.0, gt=0, description="Per-step ceiling in time units (5 minutes)."
    )
    time_scale: float = Field(
        default=0.01,
        ge=0.0,
        description="Real seconds slept per simulated time unit; 0 runs instantly.",
    )
    seed: int | None = None
    use_ai_decomposition: bool = False

    @property
    def iteration_delay_ms(self) -> int:
        return ITERATION_DELAYS_MS[self.simulation_speed]

    def merged(self, update: dict[str, Any]) -> "SimulationSettings":
        """Return a revalidated copy with ``update`` applied on top."""
        return SimulationSettings.model_validate({**self.model_dump(), **update})


class SimulationStatistics(BaseModel):
    total_objectives: int = 0
    completed_objectives: int = 0
    failed_objectives: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    average_completion_time: float = 0.0
    learning_insights: int = 0
    efficiency_score: float = 0.0


class _Event(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)


class ObjectiveStarted(_Event):
    type: Literal["objectiveStarted"] = "objectiveStarted"
    objective_id: str
    title: str


class IterationStart(_Event):
    type: Literal["iterationStart"] = "iterationStart"
    objective_id: str
    iteration: int


class IterationEnd(_Event):
    type: Literal["iterationEnd"] = "iterationEnd"
    objective_id: str
    iteration: int
    completed_tasks: int
    total_tasks: int


class TaskAdded(_Event):
    type: Literal["taskAdded"] = "taskAdded"
    objective_id: str
    task_id: str
    title: str


class TaskStarted(_Event):
    type: Literal["taskStarted"] = "taskStarted"
    objective_id: str
    task_id: str
    attempt: int


class TaskProgress(_Event):
    type: Literal["taskProgress"] = "taskProgress"
    task_id: str
    progress: int
    current_step: str
    step_progress: float = 0.0
    estimated_remaining: float = Field(
        default=0.0, description="Planned time units left, including plan mutations."
    )


class TaskCompleted(_Event):
    type: Literal["taskCompleted"] = "taskCompleted"
    objective_id: str
    task_id: str
    actual_duration: float
    result: str | None = None


class TaskFailed(_Event):
    type: Literal["taskFailed"] = "taskFailed"
    objective_id: str
    task_id: str
    reason: str
    attempts: int


class ExecutionLogEvent(_Event):
    type: Literal["executionLog"] = "executionLog"
    task_id: str
    level: LogLevel
    message: str


class ObjectiveCompleted(_Event):
    type: Literal["objectiveCompleted"] = "objectiveCompleted"
    objective_id: str
    iterations: int


class ObjectiveFailed(_Event):
    type: Literal["objectiveFailed"] = "objectiveFailed"
    objective_id: str
    reason: str
    iterations: int


class LearningInsightGenerated(_Event):
    type: Literal["learningInsightGenerated"] = "learningInsightGenerated"
    task_id: str | None
    insight: LearningInsight


class StrategicRecommendations(_Event):
    type: Literal["strategicRecommendations"] = "strategicRecommendations"
    objective_id: str
    recommendations: list[StrategicRecommendation]


class SimulationStopped(_Event):
    type: Literal["simulationStopped"] = "simulationStopped"


class SettingsUpdated(_Event):
    type: Literal["settingsUpdated"] = "settingsUpdated"
    settings: SimulationSettings


SimulationEvent = Annotated[
    Union[
        ObjectiveStarted,
        IterationStart,
        IterationEnd,
        TaskAdded,
        TaskStarted,
        TaskProgress,
        TaskCompleted,
        TaskFailed,
        ExecutionLogEvent,
        ObjectiveCompleted,
        ObjectiveFailed,
        LearningInsightGenerated,
        StrategicRecommendations,
        SimulationStopped,
        SettingsUpdated,
    ],
    Field(discriminator="type"),
]


class AddTaskResponse(BaseModel):
    """Result of ``add_task``; ``missing_dependencies`` lists unknown ids."""

    task: Task
    missing_dependencies: list[str] = Field(default_factory=list)


class StartSimulationRequest(BaseModel):
    objective_id: str
