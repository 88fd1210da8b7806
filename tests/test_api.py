"""Tests for the control API routes."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from agent_loop.api import routes
from agent_loop.core.errors import InvalidTransitionError, SimulationAlreadyRunningError
from shared.schemas import (
    InsightCategory,
    LearningInsight,
    LearningSnapshot,
    ObjectiveCreate,
    SimulationStatistics,
    WorkStatus,
)


def build_app(dispatcher) -> FastAPI:
    app = FastAPI()
    app.include_router(routes.router)
    app.dependency_overrides[routes.get_dispatcher] = lambda: dispatcher
    return app


def build_client(dispatcher) -> TestClient:
    return TestClient(build_app(dispatcher))


def async_client(dispatcher) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=build_app(dispatcher)), base_url="http://test")


@pytest.fixture
def client(dispatcher_factory):
    return build_client(dispatcher_factory())


class TestObjectiveRoutes:
    """Objective and task management endpoints."""

    def test_health_reports_idle_loop(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "running": False}

    def test_create_objective_then_read_it_back(self, client):
        created = client.post("/objectives", json={"title": "Research wind farms", "complexity": 4})

        assert created.status_code == 201
        objective_id = created.json()["id"]
        assert created.json()["status"] == "pending"

        fetched = client.get(f"/objectives/{objective_id}")
        assert fetched.status_code == 200
        assert fetched.json()["objective"]["title"] == "Research wind farms"
        assert fetched.json()["tasks"] == []

    def test_blank_objective_title_is_rejected(self, client):
        response = client.post("/objectives", json={"title": "   "})

        assert response.status_code == 422

    def test_unknown_objective_returns_not_found_envelope(self, client):
        response = client.get("/objectives/missing")

        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["code"] == "not_found"
        assert detail["message"] == "Objective missing not found"

    def test_add_task_reports_missing_dependencies(self, client):
        objective_id = client.post("/objectives", json={"title": "Ship it"}).json()["id"]

        response = client.post(
            f"/objectives/{objective_id}/tasks",
            json={"title": "Publish", "dependencies": ["ghost"]},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["missing_dependencies"] == ["ghost"]
        assert body["task"]["objective_id"] == objective_id
        assert body["task"]["status"] == "pending"

    def test_reset_of_pending_task_keeps_it_pending(self, client):
        objective_id = client.post("/objectives", json={"title": "Ship it"}).json()["id"]
        task_id = client.post(f"/objectives/{objective_id}/tasks", json={"title": "Draft"}).json()["task"]["id"]

        response = client.post(f"/tasks/{task_id}/reset")

        assert response.status_code == 200
        assert response.json()["attempts"] == 0

    def test_reset_unknown_task_returns_not_found(self, client):
        response = client.post("/tasks/nope/reset")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "not_found"


class TestSimulationRoutes:
    """Simulation control, settings, and reporting endpoints."""

    def test_stop_when_idle(self, client):
        response = client.post("/simulation/stop")

        assert response.status_code == 200
        assert response.json() == {"status": "idle"}

    def test_settings_update_is_merged(self, client):
        response = client.put("/settings", json={"concurrency_limit": 5})

        assert response.status_code == 200
        assert response.json()["concurrency_limit"] == 5
        assert response.json()["max_attempts"] == 3

    def test_out_of_range_settings_return_validation_error(self, client):
        response = client.put("/settings", json={"concurrency_limit": 50})

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "validation_error"
        assert detail["details"]["errors"][0]["loc"] == ["concurrency_limit"]

    def test_statistics_and_insights_start_empty(self, client):
        stats = client.get("/statistics")
        insights = client.get("/insights")

        assert stats.status_code == 200
        assert stats.json()["total_objectives"] == 0
        assert insights.json() == []

    def test_start_accepts_known_objective(self):
        dispatcher = MagicMock()
        dispatcher.start_simulation = AsyncMock()

        response = build_client(dispatcher).post("/simulation/start", json={"objective_id": "obj"})

        assert response.status_code == 202
        assert response.json() == {"status": "started", "objective_id": "obj"}
        dispatcher.start_simulation.assert_awaited_once_with("obj")

    @pytest.mark.parametrize(
        "error, code",
        [
            (SimulationAlreadyRunningError("A simulation is already running"), "simulation_running"),
            (InvalidTransitionError("Objective obj is already completed"), "invalid_transition"),
        ],
    )
    def test_start_conflicts_return_409(self, error, code):
        dispatcher = MagicMock()
        dispatcher.start_simulation = AsyncMock(side_effect=error)

        response = build_client(dispatcher).post("/simulation/start", json={"objective_id": "obj"})

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == code


class TestReportingRoutes:
    """Execution, statistics, insight, and persisted-task reporting."""

    def test_statistics_for_unknown_objective_return_not_found(self, client):
        response = client.get("/statistics/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "not_found"

    def test_statistics_fall_back_to_live_figures_before_first_iteration(self, client):
        objective_id = client.post("/objectives", json={"title": "Ship it"}).json()["id"]
        client.post(f"/objectives/{objective_id}/tasks", json={"title": "Draft"})

        response = client.get(f"/statistics/{objective_id}")

        assert response.status_code == 200
        assert response.json()["total_objectives"] == 1
        assert response.json()["total_tasks"] == 1
        assert response.json()["completed_tasks"] == 0

    @pytest.mark.asyncio
    async def test_recorded_statistics_are_served_over_live_ones(self, dispatcher_factory):
        dispatcher = dispatcher_factory()
        objective = await dispatcher.add_objective(ObjectiveCreate(title="Ship it"))
        await dispatcher.memory.record(
            objective.id, SimulationStatistics(total_objectives=1, total_tasks=7)
        )

        async with async_client(dispatcher) as http:
            response = await http.get(f"/statistics/{objective.id}")

        assert response.status_code == 200
        assert response.json()["total_tasks"] == 7

    @pytest.mark.asyncio
    async def test_finished_run_is_reported(self, dispatcher_factory):
        """A two-task research objective shows up in executions, statistics, and memory."""
        dispatcher = dispatcher_factory()
        objective = await dispatcher.add_objective(ObjectiveCreate(title="Research tidal energy"))
        await dispatcher.run_objective(objective.id)

        async with async_client(dispatcher) as http:
            executions = (await http.get("/executions")).json()
            stats = (await http.get(f"/statistics/{objective.id}")).json()
            persisted = (await http.get(f"/memory/objectives/{objective.id}/tasks")).json()

        assert executions["metrics"]["total_executions"] == 2
        assert executions["metrics"]["successful_executions"] == 2
        assert executions["metrics"]["active_executions"] == 0
        assert executions["active"] == []
        assert [record["outcome"] for record in executions["history"]] == ["completed", "completed"]
        assert stats["completed_objectives"] == 1
        assert stats["completed_tasks"] == 2
        assert len(persisted) == 2
        assert {task["status"] for task in persisted} == {WorkStatus.COMPLETED.value}

    def test_persisted_tasks_for_unknown_objective_are_empty(self, client):
        response = client.get("/memory/objectives/never-seen/tasks")

        assert response.status_code == 200
        assert response.json() == []

    def test_task_title_filters_insights_by_task_type(self, dispatcher_factory):
        dispatcher = dispatcher_factory()
        dispatcher.learning.import_snapshot(
            LearningSnapshot(
                insights=[
                    LearningInsight(
                        id="research",
                        category=InsightCategory.TIMING,
                        insight="Research tasks run long",
                        confidence=0.8,
                        pattern_key="research_5",
                    ),
                    LearningInsight(
                        id="weak",
                        category=InsightCategory.TIMING,
                        insight="Research tasks may stall",
                        confidence=0.4,
                        pattern_key="research_5",
                    ),
                    LearningInsight(
                        id="testing",
                        category=InsightCategory.STRATEGY,
                        insight="Testing tasks rarely fail",
                        confidence=0.9,
                        pattern_key="testing_3",
                    ),
                ]
            )
        )
        client = build_client(dispatcher)

        filtered = client.get("/insights", params={"task_title": "Research wind sites"})
        persisted = client.get("/insights")

        assert filtered.status_code == 200
        assert [insight["id"] for insight in filtered.json()] == ["research"]
        assert persisted.json() == []
