"""Dispatcher driving objectives through decompose, execute, and learn iterations."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Iterable
from typing import Any

from shared.schemas import (
    AddTaskResponse,
    IterationEnd,
    IterationStart,
    LearningInsightGenerated,
    Objective,
    ObjectiveCompleted,
    ObjectiveCreate,
    ObjectiveFailed,
    ObjectiveStarted,
    SettingsUpdated,
    SimulationSettings,
    SimulationStatistics,
    SimulationStopped,
    StrategicRecommendations,
    Task,
    TaskAdded,
    TaskCreate,
    WorkStatus,
)

from ..planner.controller import PlannerController
from ..planner.learning import LearningSystem
from .errors import (
    InvalidTransitionError,
    ObjectiveIterationExhausted,
    SimulationAlreadyRunningError,
)
from .events import EventBus
from .executor import ExecutionEngine
from .graph import TaskGraph
from .memory import MemoryAdapter
from .resolver import DependencyResolver

logger = logging.getLogger(__name__)

COMPLETION_SHARE = 0.8
CRITICAL_PRIORITY = 8


def completion_reached(tasks: Iterable[Task]) -> bool:
    """80% of tasks completed, or every high-priority task completed."""
    task_list = list(tasks)
    if not task_list:
        return False
    completed = [task for task in task_list if task.status == WorkStatus.COMPLETED]
    if len(completed) / len(task_list) >= COMPLETION_SHARE:
        return True
    critical = [task for task in task_list if task.priority >= CRITICAL_PRIORITY]
    return bool(critical) and all(task.status == WorkStatus.COMPLETED for task in critical)


class Dispatcher:
    """Owns the task graph, the engine, and the simulation loop."""

    def __init__(
        self,
        planner: PlannerController,
        memory: MemoryAdapter,
        settings: SimulationSettings | None = None,
        bus: EventBus | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.planner = planner
        self.memory = memory
        self.settings = settings or SimulationSettings()
        self.bus = bus or EventBus()
        self.graph = TaskGraph()
        self.resolver = DependencyResolver(self.graph)
        self._cancel = asyncio.Event()
        self.engine = ExecutionEngine(
            self.graph,
            self.bus,
            self.settings,
            rng=rng or random.Random(self.settings.seed),
            cancel_event=self._cancel,
        )
        self._run: asyncio.Task[Objective] | None = None

    @property
    def learning(self) -> LearningSystem:
        return self.planner.learning

    @property
    def running(self) -> bool:
        return self._run is not None and not self._run.done()

    async def restore(self) -> None:
        """Load a previously persisted learning snapshot, if any."""
        snapshot = await self.memory.load_learning_snapshot()
        if snapshot is not None:
            self.learning.import_snapshot(snapshot)

    # Inbound operations

    async def add_objective(self, data: ObjectiveCreate) -> Objective:
        objective = Objective(
            title=data.title,
            description=data.description,
            complexity=data.complexity,
        )
        self.graph.add_objective(objective)
        logger.info("Objective %s added: %s", objective.id, objective.title)
        return objective

    async def add_task(self, objective_id: str, data: TaskCreate) -> AddTaskResponse:
        task = Task(objective_id=objective_id, **data.model_dump())
        missing = self._admit(task)
        await self.memory.store_tasks(objective_id, [task])
        return AddTaskResponse(task=task, missing_dependencies=missing)

    def get_objective(self, objective_id: str) -> Objective:
        return self.graph.objective(objective_id)

    def get_tasks(self, objective_id: str) -> list[Task]:
        return self.graph.tasks_for(objective_id)

    async def reset_task(self, task_id: str) -> Task:
        task = self.graph.reset_task(task_id)
        logger.info("Task %s reset for manual retry", task_id)
        await self.memory.store_tasks(task.objective_id, [task])
        return task

    async def update_settings(self, update: dict[str, Any]) -> SimulationSettings:
        settings = self.settings.merged(update)
        self.settings = settings
        self.engine.settings = settings
        self.bus.publish(SettingsUpdated(settings=settings))
        logger.info("Simulation settings updated: %s", update)
        return settings

    async def start_simulation(self, objective_id: str) -> asyncio.Task[Objective]:
        if self.running:
            raise SimulationAlreadyRunningError("A simulation is already running")
        objective = self.graph.objective(objective_id)
        if objective.status.is_terminal:
            raise InvalidTransitionError(
                f"Objective {objective_id} is already {objective.status.value}"
            )
        self._cancel.clear()
        self._run = asyncio.create_task(self.run_objective(objective_id))
        return self._run

    async def stop_simulation(self) -> bool:
        """Signal cancellation and wait for in-flight executions to unwind."""
        if not self.running:
            return False
        self._cancel.set()
        await self._run
        self.bus.publish(SimulationStopped())
        logger.info("Simulation stopped")
        return True

    async def wait(self) -> Objective | None:
        if self._run is None:
            return None
        return await self._run

    # Loop

    async def run_objective(self, objective_id: str) -> Objective:
        """Iterate until the objective completes, fails, or the run is stopped."""
        objective = self.graph.objective(objective_id)
        if objective.status == WorkStatus.PENDING:
            self.graph.transition_objective(objective_id, WorkStatus.IN_PROGRESS)
            self.bus.publish(ObjectiveStarted(objective_id=objective_id, title=objective.title))
            logger.info("Objective %s started", objective_id)

        try:
            await self._iterate(objective)
        except ObjectiveIterationExhausted as exc:
            self.graph.transition_objective(objective_id, WorkStatus.FAILED)
            objective.result = str(exc)
            self.bus.publish(
                ObjectiveFailed(objective_id=objective_id, reason=str(exc), iterations=exc.iterations)
            )
            logger.warning("Objective %s failed after %d iterations", objective_id, exc.iterations)
        await self.memory.record(objective_id, self.statistics(objective_id))
        return objective

    async def _iterate(self, objective: Objective) -> None:
        while objective.iterations < self.settings.max_iterations:
            if self._cancel.is_set():
                return
            objective.iterations += 1
            iteration = objective.iterations
            self.bus.publish(IterationStart(objective_id=objective.id, iteration=iteration))

            await self._top_up(objective)
            await self._execute_frontier(objective)
            if self._cancel.is_set():
                return

            tasks = self.graph.tasks_for(objective.id)
            completed = sum(1 for task in tasks if task.status == WorkStatus.COMPLETED)
            self.bus.publish(
                IterationEnd(
                    objective_id=objective.id,
                    iteration=iteration,
                    completed_tasks=completed,
                    total_tasks=len(tasks),
                )
            )
            recommendations = self.planner.recommend(objective)
            if recommendations:
                self.bus.publish(
                    StrategicRecommendations(objective_id=objective.id, recommendations=recommendations)
                )
            await self.memory.save_learning_snapshot(self.learning.export_snapshot())
            await self.memory.record(objective.id, self.statistics(objective.id))

            if completion_reached(tasks):
                self._complete(objective, tasks)
                return
            await self._pause()

        raise ObjectiveIterationExhausted(objective.id, objective.iterations)

    async def _top_up(self, objective: Objective) -> None:
        """Generate a new batch only when nothing is left open for the objective."""
        if self.graph.has_open_work(objective.id):
            for blocked in self.resolver.blocked(objective.id):
                logger.warning("%s", blocked)
            return
        tasks = await self.planner.plan_tasks(objective)
        for task in tasks:
            self._admit(task)
        if tasks:
            await self.memory.store_tasks(objective.id, tasks)
        logger.info("Generated %d tasks for objective %s", len(tasks), objective.id)

    async def _execute_frontier(self, objective: Objective) -> None:
        """Keep up to ``concurrency_limit`` executions in flight.

        The resolver is re-queried after every completion so newly unblocked
        tasks start without waiting for the next iteration.
        """
        running: dict[asyncio.Task[Task], Task] = {}

        def launch() -> None:
            if self._cancel.is_set() or completion_reached(self.graph.tasks_for(objective.id)):
                return
            slots = self.settings.concurrency_limit - len(running)
            for task in self.resolver.executable(objective.id, slots):
                self.engine.dispatch(task)
                running[asyncio.create_task(self.engine.execute(task))] = task

        launch()
        while running:
            done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                task = running.pop(future)
                future.result()
                if task.status.is_terminal:
                    await self._learn(objective, task)
            launch()

    async def _learn(self, objective: Objective, task: Task) -> None:
        insights = self.planner.learn(task, self.graph.tasks_for(objective.id))
        if insights:
            task.learning = insights[0]
            await self.memory.append_insights(insights)
        for insight in insights:
            self.bus.publish(LearningInsightGenerated(task_id=task.id, insight=insight))
        await self.memory.store_tasks(objective.id, [task])

    async def _pause(self) -> None:
        delay = self.settings.iteration_delay_ms / 1000 * self.settings.time_scale
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _complete(self, objective: Objective, tasks: list[Task]) -> None:
        completed = sum(1 for task in tasks if task.status == WorkStatus.COMPLETED)
        self.graph.transition_objective(objective.id, WorkStatus.COMPLETED)
        objective.result = (
            f"Completed {completed} of {len(tasks)} tasks in {objective.iterations} iterations"
        )
        self.bus.publish(ObjectiveCompleted(objective_id=objective.id, iterations=objective.iterations))
        logger.info("Objective %s completed: %s", objective.id, objective.result)

    def _admit(self, task: Task) -> list[str]:
        missing = self.graph.add_task(task)
        self.bus.publish(TaskAdded(objective_id=task.objective_id, task_id=task.id, title=task.title))
        return missing

    # Reporting

    def statistics(self, objective_id: str | None = None) -> SimulationStatistics:
        if objective_id is None:
            objectives = self.graph.objectives()
        else:
            objectives = [self.graph.objective(objective_id)]
        tasks = [task for objective in objectives for task in self.graph.tasks_for(objective.id)]
        completed = [task for task in tasks if task.status == WorkStatus.COMPLETED]
        durations = [task.actual_duration for task in completed if task.actual_duration]
        efficiencies = [
            min(1.5, task.estimated_duration / task.actual_duration)
            for task in completed
            if task.actual_duration
        ]
        return SimulationStatistics(
            total_objectives=len(objectives),
            completed_objectives=sum(1 for o in objectives if o.status == WorkStatus.COMPLETED),
            failed_objectives=sum(1 for o in objectives if o.status == WorkStatus.FAILED),
            total_tasks=len(tasks),
            completed_tasks=len(completed),
            failed_tasks=sum(1 for task in tasks if task.status == WorkStatus.FAILED),
            average_completion_time=sum(durations) / len(durations) if durations else 0.0,
            learning_insights=len(self.learning.insights),
            efficiency_score=sum(efficiencies) / len(efficiencies) if efficiencies else 0.0,
        )
