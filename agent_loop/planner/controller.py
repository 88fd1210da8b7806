"""Facade combining decomposition with learned-strategy feedback."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from shared.schemas import LearningInsight, Objective, StrategicRecommendation, Task

from .decomposer import Decomposer
from .learning import LearningSystem


@dataclass(slots=True)
class PlannerController:
    """High-level planner delegating to the decomposer and the learning system."""

    decomposer: Decomposer
    learning: LearningSystem

    async def plan_tasks(self, objective: Objective) -> list[Task]:
        """Decompose ``objective`` and fold learned estimates into every task."""
        tasks = await self.decomposer.decompose(objective)
        return [self.learning.apply_learned_strategies(task) for task in tasks]

    def learn(self, task: Task, related_tasks: Iterable[Task] = ()) -> list[LearningInsight]:
        return self.learning.process_task_completion(task, related_tasks)

    def recommend(self, objective: Objective) -> list[StrategicRecommendation]:
        return self.learning.generate_strategic_recommendations(objective)
