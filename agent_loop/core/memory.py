"""Memory adapters persisting insights, task snapshots, and statistics.

The in-memory adapter is the default; the Redis adapter keeps the same keys
layout so a deployment can share learned state across restarts.
"""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Protocol

import redis.asyncio as redis

from shared.metrics import StatisticsProvider, StatisticsRecorder
from shared.schemas import LearningInsight, LearningSnapshot, SimulationStatistics, Task

DEFAULT_INSIGHT_LIMIT = 500


class MemoryAdapter(Protocol):
    """Protocol for persisted simulation state."""

    async def append_insights(self, insights: list[LearningInsight]) -> None: ...

    async def get_insights(self, limit: int | None = None) -> list[LearningInsight]: ...

    async def store_tasks(self, objective_id: str, tasks: list[Task]) -> None: ...

    async def get_tasks(self, objective_id: str) -> list[Task]: ...

    async def save_learning_snapshot(self, snapshot: LearningSnapshot) -> None: ...

    async def load_learning_snapshot(self) -> LearningSnapshot | None: ...

    async def record(self, objective_id: str, snapshot: SimulationStatistics) -> None: ...

    async def get_metrics(self, objective_id: str) -> SimulationStatistics | None: ...


@dataclass(slots=True)
class InMemoryAdapter(StatisticsRecorder):
    """Process-local adapter used by default and in tests."""

    insight_limit: int = DEFAULT_INSIGHT_LIMIT
    _insights: list[LearningInsight] = field(default_factory=list)
    _tasks: dict[str, dict[str, Task]] = field(default_factory=lambda: defaultdict(dict))
    _snapshot: LearningSnapshot | None = None
    _metrics: dict[str, SimulationStatistics] = field(default_factory=dict)

    async def append_insights(self, insights: list[LearningInsight]) -> None:
        self._insights.extend(insight.model_copy() for insight in insights)
        del self._insights[: -self.insight_limit]

    async def get_insights(self, limit: int | None = None) -> list[LearningInsight]:
        if limit is None:
            return list(self._insights)
        return self._insights[-limit:] if limit > 0 else []

    async def store_tasks(self, objective_id: str, tasks: list[Task]) -> None:
        for task in tasks:
            self._tasks[objective_id][task.id] = task.model_copy(deep=True)

    async def get_tasks(self, objective_id: str) -> list[Task]:
        return list(self._tasks.get(objective_id, {}).values())

    async def save_learning_snapshot(self, snapshot: LearningSnapshot) -> None:
        self._snapshot = snapshot.model_copy(deep=True)

    async def load_learning_snapshot(self) -> LearningSnapshot | None:
        return self._snapshot

    async def record(self, objective_id: str, snapshot: SimulationStatistics) -> None:
        self._metrics[objective_id] = snapshot.model_copy()

    async def get_metrics(self, objective_id: str) -> SimulationStatistics | None:
        return self._metrics.get(objective_id)


@dataclass(slots=True)
class RedisMemoryAdapter(StatisticsRecorder, StatisticsProvider):
    """Concrete Redis implementation of the memory adapter."""

    client: redis.Redis
    insights_key: str = "insights"
    tasks_prefix: str = "tasks"
    snapshot_key: str = "learning:snapshot"
    metrics_prefix: str = "metrics"
    insight_limit: int = DEFAULT_INSIGHT_LIMIT

    async def append_insights(self, insights: list[LearningInsight]) -> None:
        if not insights:
            return
        pipeline = self.client.pipeline()
        for insight in insights:
            pipeline.rpush(self.insights_key, insight.model_dump_json())
        pipeline.ltrim(self.insights_key, -self.insight_limit, -1)
        await pipeline.execute()

    async def get_insights(self, limit: int | None = None) -> list[LearningInsight]:
        if limit is not None and limit <= 0:
            return []
        start = 0 if limit is None else -limit
        entries = await self.client.lrange(self.insights_key, start, -1)
        return [LearningInsight.model_validate_json(item) for item in entries]

    async def store_tasks(self, objective_id: str, tasks: list[Task]) -> None:
        if not tasks:
            return
        await self.client.hset(
            f"{self.tasks_prefix}:{objective_id}",
            mapping={task.id: task.model_dump_json() for task in tasks},
        )

    async def get_tasks(self, objective_id: str) -> list[Task]:
        raw = await self.client.hgetall(f"{self.tasks_prefix}:{objective_id}")
        return [Task.model_validate_json(value) for value in raw.values()]

    async def save_learning_snapshot(self, snapshot: LearningSnapshot) -> None:
        await self.client.set(self.snapshot_key, snapshot.model_dump_json())

    async def load_learning_snapshot(self) -> LearningSnapshot | None:
        raw = await self.client.get(self.snapshot_key)
        if raw is None:
            return None
        return LearningSnapshot.model_validate_json(raw)

    async def record(self, objective_id: str, snapshot: SimulationStatistics) -> None:
        payload = {key: json.dumps(value) for key, value in snapshot.model_dump().items()}
        await self.client.hset(f"{self.metrics_prefix}:{objective_id}", mapping=payload)

    async def get_metrics(self, objective_id: str) -> SimulationStatistics | None:
        raw = await self.client.hgetall(f"{self.metrics_prefix}:{objective_id}")
        if not raw:
            return None
        decoded: dict[str, Any] = {}
        for key, value in raw.items():
            field_name = key.decode() if isinstance(key, (bytes, bytearray)) else key
            decoded[field_name] = self._convert_metric_value(value)
        return SimulationStatistics.model_validate(decoded)

    @staticmethod
    def _convert_metric_value(value: Any) -> Any:
        text = value.decode() if isinstance(value, (bytes, bytearray)) else value
        if isinstance(text, str):
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text
        return text
