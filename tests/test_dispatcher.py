"""Tests for the orchestration loop."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from agent_loop.core.dispatcher import completion_reached
from agent_loop.core.errors import InvalidTransitionError, SimulationAlreadyRunningError
from shared.schemas import (
    IterationStart,
    LearningInsightGenerated,
    ObjectiveCompleted,
    ObjectiveCreate,
    ObjectiveFailed,
    SettingsUpdated,
    SimulationStopped,
    TaskCompleted,
    TaskCreate,
    TaskFailed,
    TaskStarted,
    WorkStatus,
)
from tests.support import FAIL, ScriptedRandom, make_task


async def _objective(dispatcher, title="Ship the quarterly report", complexity=5):
    return await dispatcher.add_objective(ObjectiveCreate(title=title, complexity=complexity))


def _of_type(dispatcher, event_type):
    return [event for event in dispatcher.bus.history if isinstance(event, event_type)]


class TestCompletionRule:
    def test_eighty_percent_completed_is_enough(self):
        tasks = [make_task("o", f"t{i}") for i in range(10)]
        for task in tasks[:8]:
            task.status = WorkStatus.COMPLETED

        assert completion_reached(tasks) is True

    def test_all_high_priority_tasks_completed_is_enough(self):
        tasks = [make_task("o", "key", priority=9), make_task("o", "minor", priority=3)]
        tasks[0].status = WorkStatus.COMPLETED

        assert completion_reached(tasks) is True

    def test_no_high_priority_tasks_needs_the_share(self):
        tasks = [make_task("o", f"t{i}", priority=5) for i in range(3)]
        tasks[0].status = WorkStatus.COMPLETED

        assert completion_reached(tasks) is False

    def test_empty_objective_is_not_complete(self):
        assert completion_reached([]) is False


class TestSimulationLoop:
    """Full iterations driven by ``run_objective``."""

    @pytest.mark.asyncio
    async def test_empty_objective_is_decomposed_and_completed(self, dispatcher_factory):
        dispatcher = dispatcher_factory()
        objective = await _objective(dispatcher, title="Research tidal energy")

        result = await dispatcher.run_objective(objective.id)

        assert result.status == WorkStatus.COMPLETED
        assert result.iterations == 1
        assert [task.title for task in dispatcher.get_tasks(objective.id)] == [
            "Research and gather information",
            "Analyze and synthesize findings",
        ]
        assert len(_of_type(dispatcher, ObjectiveCompleted)) == 1
        stored = await dispatcher.memory.get_tasks(objective.id)
        assert {task.status for task in stored} == {WorkStatus.COMPLETED}

    @pytest.mark.asyncio
    async def test_failed_dependency_runs_to_iteration_ceiling(self, dispatcher_factory):
        """B fails every attempt; A never starts and the objective fails at the ceiling."""
        dispatcher = dispatcher_factory(ScriptedRandom(default=FAIL))
        objective = await _objective(dispatcher)
        b = (await dispatcher.add_task(objective.id, TaskCreate(title="Task B"))).task
        a = (await dispatcher.add_task(objective.id, TaskCreate(title="Task A", dependencies=[b.id]))).task

        result = await dispatcher.run_objective(objective.id)

        assert result.status == WorkStatus.FAILED
        assert result.iterations == dispatcher.settings.max_iterations
        assert a.status == WorkStatus.PENDING
        assert b.status == WorkStatus.FAILED
        assert b.attempts == 3
        started = [event.task_id for event in _of_type(dispatcher, TaskStarted)]
        assert a.id not in started
        assert len(_of_type(dispatcher, IterationStart)) == dispatcher.settings.max_iterations
        failed = _of_type(dispatcher, ObjectiveFailed)
        assert [event.reason for event in failed] == ["maximum iterations reached"]
        assert dispatcher.bus.history[-1] is failed[0]
        b_failed_at = next(
            i for i, event in enumerate(dispatcher.bus.history) if isinstance(event, TaskFailed)
        )
        assert dispatcher.bus.history.index(failed[0]) > b_failed_at
        assert any(event.task_id == b.id for event in _of_type(dispatcher, LearningInsightGenerated))

    @pytest.mark.asyncio
    async def test_objective_completes_at_eighty_percent(self, dispatcher_factory):
        """With concurrency 1 the loop stops launching once 8 of 10 tasks completed."""
        dispatcher = dispatcher_factory(concurrency_limit=1)
        objective = await _objective(dispatcher)
        for index in range(10):
            await dispatcher.add_task(objective.id, TaskCreate(title=f"Step {index}"))

        result = await dispatcher.run_objective(objective.id)

        statuses = [task.status for task in dispatcher.get_tasks(objective.id)]
        assert result.status == WorkStatus.COMPLETED
        assert statuses.count(WorkStatus.COMPLETED) == 8
        assert statuses.count(WorkStatus.PENDING) == 2

    @pytest.mark.asyncio
    async def test_blocked_tasks_do_not_prevent_completion(self, dispatcher_factory):
        dispatcher = dispatcher_factory()
        objective = await _objective(dispatcher)
        for index in range(8):
            await dispatcher.add_task(objective.id, TaskCreate(title=f"Step {index}"))
        for index in range(2):
            response = await dispatcher.add_task(
                objective.id, TaskCreate(title=f"Orphan {index}", dependencies=["ghost"])
            )
            assert response.missing_dependencies == ["ghost"]

        result = await dispatcher.run_objective(objective.id)

        assert result.status == WorkStatus.COMPLETED
        assert result.iterations == 1

    @pytest.mark.asyncio
    async def test_dependencies_complete_before_dependents_start(self, dispatcher_factory):
        dispatcher = dispatcher_factory()
        objective = await _objective(dispatcher)
        first = (await dispatcher.add_task(objective.id, TaskCreate(title="First"))).task
        second = (await dispatcher.add_task(objective.id, TaskCreate(title="Second", dependencies=[first.id]))).task
        third = (
            await dispatcher.add_task(
                objective.id, TaskCreate(title="Third", dependencies=[first.id, second.id])
            )
        ).task

        await dispatcher.run_objective(objective.id)

        completed_so_far: set[str] = set()
        deps = {task.id: set(task.dependencies) for task in (first, second, third)}
        for event in dispatcher.bus.history:
            if isinstance(event, TaskStarted):
                assert deps[event.task_id] <= completed_so_far
            elif isinstance(event, TaskCompleted):
                completed_so_far.add(event.task_id)
        assert completed_so_far == {first.id, second.id, third.id}

    @pytest.mark.asyncio
    async def test_unblocked_tasks_start_in_the_same_iteration(self, dispatcher_factory):
        dispatcher = dispatcher_factory(max_iterations=1)
        objective = await _objective(dispatcher)
        first = (await dispatcher.add_task(objective.id, TaskCreate(title="First"))).task
        await dispatcher.add_task(objective.id, TaskCreate(title="Second", dependencies=[first.id]))

        result = await dispatcher.run_objective(objective.id)

        assert result.status == WorkStatus.COMPLETED
        assert all(task.status == WorkStatus.COMPLETED for task in dispatcher.get_tasks(objective.id))

    @pytest.mark.asyncio
    async def test_concurrency_limit_bounds_in_flight_executions(self, dispatcher_factory):
        dispatcher = dispatcher_factory(concurrency_limit=2)
        objective = await _objective(dispatcher)
        for index in range(5):
            await dispatcher.add_task(objective.id, TaskCreate(title=f"Step {index}"))
        execute = dispatcher.engine.execute
        active = 0
        peak = 0

        async def tracked(task):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                return await execute(task)
            finally:
                active -= 1

        dispatcher.engine.execute = tracked

        await dispatcher.run_objective(objective.id)

        assert peak == 2


class TestControl:
    """Start, stop, settings, reset, and statistics."""

    @pytest.mark.asyncio
    async def test_stop_returns_running_tasks_to_pending(self, dispatcher_factory):
        dispatcher = dispatcher_factory(time_scale=0.01)
        objective = await _objective(dispatcher)
        for index in range(3):
            await dispatcher.add_task(objective.id, TaskCreate(title=f"Step {index}"))

        await dispatcher.start_simulation(objective.id)
        await asyncio.sleep(0.05)
        stopped = await dispatcher.stop_simulation()

        assert stopped is True
        assert dispatcher.running is False
        assert objective.status == WorkStatus.IN_PROGRESS
        for task in dispatcher.get_tasks(objective.id):
            assert task.status == WorkStatus.PENDING
            assert task.attempts == 0
        assert _of_type(dispatcher, TaskFailed) == []
        assert len(_of_type(dispatcher, SimulationStopped)) == 1

    @pytest.mark.asyncio
    async def test_stopped_objective_can_be_resumed(self, dispatcher_factory):
        dispatcher = dispatcher_factory(time_scale=0.01)
        objective = await _objective(dispatcher)
        await dispatcher.add_task(objective.id, TaskCreate(title="Only step"))
        await dispatcher.start_simulation(objective.id)
        await asyncio.sleep(0.02)
        await dispatcher.stop_simulation()
        await dispatcher.update_settings({"time_scale": 0})

        await dispatcher.start_simulation(objective.id)
        result = await dispatcher.wait()

        assert result.status == WorkStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_second_start_while_running_is_rejected(self, dispatcher_factory):
        dispatcher = dispatcher_factory(time_scale=0.01)
        objective = await _objective(dispatcher)
        await dispatcher.add_task(objective.id, TaskCreate(title="Only step"))

        await dispatcher.start_simulation(objective.id)
        with pytest.raises(SimulationAlreadyRunningError):
            await dispatcher.start_simulation(objective.id)
        await dispatcher.stop_simulation()

    @pytest.mark.asyncio
    async def test_finished_objective_cannot_restart(self, dispatcher_factory):
        dispatcher = dispatcher_factory()
        objective = await _objective(dispatcher, title="Research reefs")
        await dispatcher.run_objective(objective.id)

        with pytest.raises(InvalidTransitionError):
            await dispatcher.start_simulation(objective.id)

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_a_no_op(self, dispatcher_factory):
        assert await dispatcher_factory().stop_simulation() is False

    @pytest.mark.asyncio
    async def test_update_settings_merges_and_publishes(self, dispatcher_factory):
        dispatcher = dispatcher_factory()

        updated = await dispatcher.update_settings({"simulation_speed": "fast", "concurrency_limit": 5})

        assert updated.iteration_delay_ms == 1000
        assert updated.concurrency_limit == 5
        assert updated.max_iterations == 4
        assert dispatcher.engine.settings is updated
        assert len(_of_type(dispatcher, SettingsUpdated)) == 1

    @pytest.mark.asyncio
    async def test_invalid_settings_are_rejected(self, dispatcher_factory):
        dispatcher = dispatcher_factory()

        with pytest.raises(ValidationError):
            await dispatcher.update_settings({"concurrency_limit": 50})

        assert dispatcher.settings.concurrency_limit == 3

    @pytest.mark.asyncio
    async def test_reset_task_allows_manual_retry(self, dispatcher_factory):
        dispatcher = dispatcher_factory(ScriptedRandom(default=FAIL), max_iterations=1)
        objective = await _objective(dispatcher)
        task = (await dispatcher.add_task(objective.id, TaskCreate(title="Flaky"))).task
        await dispatcher.add_task(objective.id, TaskCreate(title="Blocked", dependencies=[task.id]))
        await dispatcher.run_objective(objective.id)
        assert task.status == WorkStatus.FAILED

        reset = await dispatcher.reset_task(task.id)

        assert reset.status == WorkStatus.PENDING
        assert reset.attempts == 0

    @pytest.mark.asyncio
    async def test_statistics_summarize_the_run(self, dispatcher_factory):
        dispatcher = dispatcher_factory()
        objective = await _objective(dispatcher, title="Research coral reefs")
        await dispatcher.run_objective(objective.id)

        stats = dispatcher.statistics()

        assert stats.total_objectives == 1
        assert stats.completed_objectives == 1
        assert stats.total_tasks == 2
        assert stats.completed_tasks == 2
        assert stats.failed_tasks == 0
        assert stats.average_completion_time > 0
        assert 0 < stats.efficiency_score <= 1.5
        assert await dispatcher.memory.get_metrics(objective.id) == stats

    @pytest.mark.asyncio
    async def test_restore_loads_persisted_learning(self, dispatcher_factory):
        source = dispatcher_factory()
        objective = await _objective(source, title="Research coral reefs")
        await source.run_objective(objective.id)
        snapshot = await source.memory.load_learning_snapshot()
        assert snapshot is not None

        target = dispatcher_factory()
        await target.memory.save_learning_snapshot(snapshot)
        await target.restore()

        assert target.learning.patterns.keys() == source.learning.patterns.keys()
