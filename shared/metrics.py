"""Per-objective statistics snapshots: where the loop writes them and how they are read."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Protocol

from .schemas import SimulationStatistics


class StatisticsRecorder(ABC):
    """Receives a fresh snapshot after every iteration and at the end of a run."""

    @abstractmethod
    async def record(self, objective_id: str, snapshot: SimulationStatistics) -> None:
        ...


class StatisticsProvider(Protocol):
    async def get_metrics(self, objective_id: str) -> SimulationStatistics | None:
        ...


async def latest_statistics(
    provider: StatisticsProvider,
    objective_id: str,
    compute: Callable[[str], SimulationStatistics],
) -> SimulationStatistics:
    """Last recorded snapshot, or ``compute(objective_id)`` before the first iteration ends."""
    recorded = await provider.get_metrics(objective_id)
    if recorded is not None:
        return recorded
    return compute(objective_id)
