"""Simulated multi-step task execution with adaptive retries.

A task attempt runs through a bounded plan of steps. Each step is split into
micro-steps that emit progress events. Failed adaptive steps get one adapted
retry; a failed attempt is retried as a whole with exponential backoff until
the attempt budget is spent.

Time is simulated: durations are expressed in time units (seconds) and
``SimulationSettings.time_scale`` converts them into real sleeps, so a
``time_scale`` of 0 runs a full execution without waiting.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass, replace

from shared.schemas import (
    ExecutionLog,
    ExecutionLogEvent,
    ExecutionMetrics,
    ExecutionRecord,
    LogLevel,
    SimulationSettings,
    Task,
    TaskCompleted,
    TaskFailed,
    TaskProgress,
    TaskStarted,
    WorkStatus,
    utcnow,
)

from .errors import (
    ExecutionCancelled,
    StepExecutionFailure,
    TaskAttemptFailure,
    TaskExecutionTimeout,
)
from .events import EventBus
from .graph import TaskGraph
from .taxonomy import classify_task_type

logger = logging.getLogger(__name__)

MIN_PLAN_STEPS = 3
MAX_PLAN_STEPS = 10
MAX_FAILURE_PROBABILITY = 0.30
VARIANCE_THRESHOLD = 0.3
HISTORY_SIZE = 50

# Per micro-step work multipliers by task type; the spread drives timing variance.
WORK_FACTORS: dict[str, tuple[float, float]] = {
    "research": (0.9, 1.2),
    "design": (0.85, 1.3),
    "implementation": (0.9, 1.5),
    "general": (0.8, 1.3),
}

CORE_STEP_DESCRIPTIONS: dict[str, list[str]] = {
    "research": [
        "Gathering source materials and data",
        "Analyzing collected information",
        "Synthesizing research findings",
        "Validating research conclusions",
    ],
    "design": [
        "Creating initial design concepts",
        "Refining design specifications",
        "Evaluating design alternatives",
        "Finalizing design documentation",
    ],
    "implementation": [
        "Setting up development environment",
        "Writing core implementation code",
        "Testing individual components",
        "Integrating system components",
    ],
    "analysis": [
        "Collecting baseline data",
        "Performing comparative analysis",
        "Identifying patterns and trends",
        "Generating analytical insights",
    ],
}

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@dataclass(slots=True)
class PlanStep:
    id: str
    name: str
    description: str
    duration: float
    complexity: int
    adaptive: bool


@dataclass(slots=True)
class ExecutionPlan:
    steps: list[PlanStep]

    def remaining_after(self, index: int) -> float:
        return sum(step.duration for step in self.steps[index + 1:])

    @property
    def estimated_duration(self) -> float:
        return sum(step.duration for step in self.steps)


def plan_step_count(complexity: int) -> int:
    return max(MIN_PLAN_STEPS, min(MAX_PLAN_STEPS, complexity + 2))


def failure_probability(complexity: int, attempts: int) -> float:
    """Chance that a step fails; grows with complexity and repeated attempts."""
    base = 0.02 * complexity + 0.05 * max(0, attempts - 1)
    return min(MAX_FAILURE_PROBABILITY, base)


def backoff_delay_ms(base_ms: float, attempt: int) -> float:
    return base_ms * (2 ** attempt)


class ExecutionEngine:
    """Drives tasks from ``pending`` to a terminal status."""

    def __init__(
        self,
        graph: TaskGraph,
        bus: EventBus,
        settings: SimulationSettings | None = None,
        rng: random.Random | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.graph = graph
        self.bus = bus
        self.settings = settings or SimulationSettings()
        self.rng = rng or random.Random(self.settings.seed)
        self.cancel_event = cancel_event or asyncio.Event()
        self._active: dict[str, ExecutionRecord] = {}
        self._history: deque[ExecutionRecord] = deque(maxlen=HISTORY_SIZE)

    # Dispatch and lifecycle

    def dispatch(self, task: Task) -> ExecutionRecord:
        """Claim ``task`` for an attempt without suspending.

        The status flip to ``in-progress`` happens before any await, so no
        other dispatcher pass can pick the same task concurrently.
        """
        self.graph.transition_task(task.id, WorkStatus.IN_PROGRESS)
        task.attempts += 1
        if task.started_at is None:
            task.started_at = utcnow()
        record = ExecutionRecord(task_id=task.id, attempt=task.attempts)
        self._active[task.id] = record
        self.bus.publish(
            TaskStarted(objective_id=task.objective_id, task_id=task.id, attempt=task.attempts)
        )
        self._log(record, LogLevel.INFO, f"Starting execution of: {task.title} (attempt {task.attempts})")
        return record

    async def execute(self, task: Task) -> Task:
        """Run ``task`` until it completes, fails, or the simulation is stopped."""
        record = self._active.get(task.id)
        if task.status != WorkStatus.IN_PROGRESS or record is None:
            record = self.dispatch(task)

        elapsed = 0.0
        while True:
            try:
                await self._run_attempt(task, record)
            except ExecutionCancelled:
                elapsed += record.elapsed
                self._cancel(task, record)
                return task
            except TaskAttemptFailure as exc:
                elapsed += record.elapsed
                self._log(record, LogLevel.ERROR, f"Attempt {record.attempt} aborted: {exc}")
                if task.attempts >= self.settings.max_attempts:
                    self._archive(record, "failed")
                    self._fail(task, elapsed, f"Failed after {task.attempts} attempts: {exc}")
                    return task
                self._archive(record, "aborted")
                delay_ms = backoff_delay_ms(self.settings.backoff_base_ms, task.attempts)
                logger.info("Backing off %.0fms before re-dispatching task %s", delay_ms, task.id)
                try:
                    await self._sleep(delay_ms / 1000.0)
                except ExecutionCancelled:
                    elapsed += delay_ms / 1000.0
                    self._cancel(task, None)
                    return task
                elapsed += delay_ms / 1000.0
                record = self.dispatch(task)
            else:
                elapsed += record.elapsed
                self._complete(task, record, elapsed)
                return task

    # Planning

    def create_plan(self, task: Task) -> ExecutionPlan:
        complexity = task.complexity
        count = plan_step_count(complexity)
        title = task.title.lower()
        steps = [
            PlanStep(
                id="init",
                name="Initialization",
                description=f"Initializing {title}",
                duration=self._step_duration(task, count),
                complexity=max(1, complexity - 3),
                adaptive=False,
            )
        ]
        for index in range(1, count - 1):
            steps.append(
                PlanStep(
                    id=f"core_{index}",
                    name=f"Core Execution {index}",
                    description=self._core_step_description(task, index, count),
                    duration=self._step_duration(task, count),
                    complexity=complexity,
                    adaptive=True,
                )
            )
        steps.append(
            PlanStep(
                id="finalize",
                name="Finalization",
                description=f"Finalizing {title}",
                duration=self._step_duration(task, count),
                complexity=max(1, complexity - 2),
                adaptive=False,
            )
        )
        return ExecutionPlan(steps=steps)

    def _step_duration(self, task: Task, step_count: int) -> float:
        base = task.estimated_duration / step_count
        complexity_factor = 0.8 + (task.complexity / 10) * 0.4
        jitter = self.rng.uniform(0.7, 1.3)
        return base * complexity_factor * jitter

    @staticmethod
    def _core_step_description(task: Task, index: int, total: int) -> str:
        task_type = classify_task_type(task.title)
        title = task.title.lower()
        descriptions = CORE_STEP_DESCRIPTIONS.get(
            task_type,
            [
                f"Executing {title} planning phase",
                f"Implementing {title} core logic",
                f"Validating {title} functionality",
                f"Completing {title} requirements",
            ],
        )
        phase = int(index / total * 3)
        return descriptions[min(phase, len(descriptions) - 1)]

    # Attempt execution

    async def _run_attempt(self, task: Task, record: ExecutionRecord) -> None:
        plan = self.create_plan(task)
        for index, step in enumerate(plan.steps):
            self._check_cancelled()
            record.current_step = step.name
            self._log(record, LogLevel.INFO, f"Executing step: {step.description}")
            target = step.duration
            try:
                actual = await self._execute_step(task, record, step, index, plan)
            except StepExecutionFailure as exc:
                if not step.adaptive:
                    raise TaskAttemptFailure(f"Step '{step.name}' failed: {exc}") from exc
                target, actual = await self._retry_step(task, record, step, index, plan, exc)
            self._adapt_plan(record, plan, index, target, actual)

        record.progress = 100
        task.progress = 100
        self.bus.publish(
            TaskProgress(task_id=task.id, progress=100, current_step="Completed", step_progress=100.0)
        )

    async def _execute_step(
        self,
        task: Task,
        record: ExecutionRecord,
        step: PlanStep,
        index: int,
        plan: ExecutionPlan,
    ) -> float:
        """Run one step's micro-steps and return the simulated time it took."""
        micro_steps = self.settings.micro_steps
        micro_duration = step.duration / micro_steps
        low, high = WORK_FACTORS.get(classify_task_type(task.title), WORK_FACTORS["general"])
        total_steps = len(plan.steps)
        spent = 0.0

        for micro in range(micro_steps):
            self._check_cancelled()
            units = micro_duration * self.rng.uniform(low, high)
            await self._sleep(units)
            spent += units
            record.elapsed += units
            if spent > self.settings.step_timeout:
                raise TaskExecutionTimeout(
                    f"Step '{step.name}' exceeded {self.settings.step_timeout:.0f} time units"
                )

            step_progress = (micro + 1) / micro_steps
            progress = round((index + step_progress) / total_steps * 100)
            record.progress = progress
            task.progress = progress
            self.bus.publish(
                TaskProgress(
                    task_id=task.id,
                    progress=progress,
                    current_step=step.name,
                    step_progress=step_progress * 100,
                    estimated_remaining=max(0.0, step.duration - spent) + plan.remaining_after(index),
                )
            )

        self._check_cancelled()
        if self.rng.random() < failure_probability(step.complexity, task.attempts):
            raise StepExecutionFailure(step.name, "simulated failure")
        self._log(record, LogLevel.SUCCESS, f"Completed step: {step.name}")
        return spent

    async def _retry_step(
        self,
        task: Task,
        record: ExecutionRecord,
        step: PlanStep,
        index: int,
        plan: ExecutionPlan,
        error: StepExecutionFailure,
    ) -> tuple[float, float]:
        adapted = replace(
            step,
            complexity=max(1, step.complexity - 1),
            duration=step.duration * 1.5,
        )
        self._log(record, LogLevel.WARNING, f"Retrying step with adaptation due to: {error}")
        try:
            actual = await self._execute_step(task, record, adapted, index, plan)
        except StepExecutionFailure as retry_error:
            self._log(record, LogLevel.ERROR, f"Adapted retry failed: {retry_error}")
            raise TaskAttemptFailure(
                f"Step '{step.name}' failed after adaptation: {retry_error}"
            ) from retry_error
        return adapted.duration, actual

    def _adapt_plan(
        self,
        record: ExecutionRecord,
        plan: ExecutionPlan,
        index: int,
        target: float,
        actual: float,
    ) -> float:
        """Scale up the remaining steps when a step drifted from its target."""
        variance = abs(actual - target) / target if target > 0 else 0.0
        if variance > VARIANCE_THRESHOLD and index + 1 < len(plan.steps):
            factor = 1 + variance * 0.5
            for remaining in plan.steps[index + 1:]:
                remaining.duration *= factor
            self._log(
                record,
                LogLevel.INFO,
                f"Timing variance {variance:.0%}; remaining steps scaled by {factor:.2f}",
            )
        return variance

    # Terminal transitions

    def _complete(self, task: Task, record: ExecutionRecord, elapsed: float) -> None:
        self.graph.transition_task(task.id, WorkStatus.COMPLETED)
        task.progress = 100
        task.completed_at = utcnow()
        task.actual_duration = elapsed
        task.failure_reason = None
        task.result = self.summarize(task, record)
        self._log(record, LogLevel.SUCCESS, f"Task completed successfully: {task.title}")
        self._archive(record, "completed")
        self.bus.publish(
            TaskCompleted(
                objective_id=task.objective_id,
                task_id=task.id,
                actual_duration=elapsed,
                result=task.result,
            )
        )

    def _fail(self, task: Task, elapsed: float, reason: str) -> None:
        self.graph.transition_task(task.id, WorkStatus.FAILED)
        task.completed_at = utcnow()
        task.actual_duration = elapsed
        task.failure_reason = reason
        task.result = f"Execution failed: {reason}"
        logger.warning("Task %s failed: %s", task.id, reason)
        self.bus.publish(
            TaskFailed(
                objective_id=task.objective_id,
                task_id=task.id,
                reason=reason,
                attempts=task.attempts,
            )
        )

    def _cancel(self, task: Task, record: ExecutionRecord | None) -> None:
        """Return ``task`` to ``pending`` after a stop.

        An attempt interrupted mid-flight is not charged. A stop seen during
        backoff has no attempt in flight, so the failed attempts stay counted.
        """
        self.graph.transition_task(task.id, WorkStatus.PENDING)
        if record is not None:
            self._log(record, LogLevel.WARNING, "Task execution cancelled")
            self._archive(record, "cancelled")
            task.attempts = max(0, task.attempts - 1)
        task.progress = 0
        if task.attempts == 0:
            task.started_at = None

    def _archive(self, record: ExecutionRecord, outcome: str) -> None:
        record.outcome = outcome
        record.end_time = utcnow()
        self._active.pop(record.task_id, None)
        self._history.append(record)

    @staticmethod
    def summarize(task: Task, record: ExecutionRecord) -> str:
        actual = task.actual_duration or 0.0
        efficiency = task.estimated_duration / actual if actual > 0 else 1.0
        steps_done = sum(1 for log in record.logs if log.message.startswith("Completed step"))
        success_rate = max(0.7, 1 - task.complexity / 15)
        lines = [
            f"Successfully completed: {task.title}",
            "",
            "Performance metrics:",
            f"- Execution time: {actual:.1f} time units (estimated {task.estimated_duration:.1f})",
            f"- Efficiency ratio: {efficiency:.2f}",
            f"- Steps completed: {steps_done}",
            f"- Attempts: {task.attempts}",
            f"- Success rate prediction: {success_rate:.0%}",
        ]
        if task.learning is not None:
            lines += ["", f"Key learning: {task.learning.insight}"]
        return "\n".join(lines)

    # Helpers

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ExecutionCancelled("Simulation stopped")

    async def _sleep(self, units: float) -> None:
        self._check_cancelled()
        await asyncio.sleep(units * self.settings.time_scale)
        self._check_cancelled()

    def _log(self, record: ExecutionRecord, level: LogLevel, message: str) -> None:
        record.logs.append(
            ExecutionLog(
                level=level,
                message=message,
                details={
                    "task_id": record.task_id,
                    "current_step": record.current_step,
                    "progress": record.progress,
                },
            )
        )
        logger.log(_LOG_LEVELS[level], "[%s] %s", record.task_id, message)
        self.bus.publish(ExecutionLogEvent(task_id=record.task_id, level=level, message=message))

    # Introspection

    def active_executions(self) -> list[ExecutionRecord]:
        return list(self._active.values())

    def execution_history(self) -> list[ExecutionRecord]:
        return list(self._history)

    def metrics(self) -> ExecutionMetrics:
        history = list(self._history)
        finished = [record for record in history if record.outcome in ("completed", "failed")]
        successes = [record for record in finished if record.outcome == "completed"]
        average = sum(record.elapsed for record in finished) / len(finished) if finished else 0.0
        return ExecutionMetrics(
            total_executions=len(finished),
            successful_executions=len(successes),
            success_rate=len(successes) / len(finished) if finished else 0.0,
            average_duration=average,
            active_executions=len(self._active),
        )
