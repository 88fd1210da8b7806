"""Shared fixtures for the agent loop test suite."""

from __future__ import annotations

import pytest

from agent_loop.core.dispatcher import Dispatcher
from agent_loop.core.events import EventBus
from agent_loop.core.executor import ExecutionEngine
from agent_loop.core.graph import TaskGraph
from agent_loop.core.memory import InMemoryAdapter
from agent_loop.planner.controller import PlannerController
from agent_loop.planner.decomposer import TemplateDecomposer
from agent_loop.planner.learning import LearningSystem
from shared.schemas import Objective, SimulationSettings
from tests.support import ScriptedRandom


@pytest.fixture
def settings() -> SimulationSettings:
    return SimulationSettings(time_scale=0.0, max_iterations=4)


@pytest.fixture
def graph() -> TaskGraph:
    return TaskGraph()


@pytest.fixture
def objective(graph: TaskGraph) -> Objective:
    return graph.add_objective(Objective(id="obj", title="Ship the report", complexity=5))


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def engine_factory(graph: TaskGraph, bus: EventBus, settings: SimulationSettings):
    def factory(rng: ScriptedRandom | None = None, **overrides) -> ExecutionEngine:
        engine_settings = settings.model_copy(update=overrides) if overrides else settings
        return ExecutionEngine(graph, bus, engine_settings, rng=rng or ScriptedRandom())

    return factory


@pytest.fixture
def dispatcher_factory(settings: SimulationSettings):
    def factory(rng: ScriptedRandom | None = None, **overrides) -> Dispatcher:
        planner = PlannerController(decomposer=TemplateDecomposer(), learning=LearningSystem())
        return Dispatcher(
            planner=planner,
            memory=InMemoryAdapter(),
            settings=settings.model_copy(update=overrides) if overrides else settings,
            rng=rng or ScriptedRandom(),
        )

    return factory
