"""Tests for the LLM gateway HTTP client."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.llm_gateway_client import LLMGatewayClient, build_llm_gateway_client
from shared.schemas import Objective


def http_client_returning(body: dict) -> AsyncMock:
    response = MagicMock()
    response.json.return_value = body
    http_client = AsyncMock()
    http_client.post.return_value = response
    return http_client


class TestLLMGatewayClient:
    @pytest.mark.asyncio
    async def test_propose_tasks_posts_objective_prompt(self):
        http_client = http_client_returning({"output_text": "1. Survey sites"})
        client = LLMGatewayClient(base_url="http://gateway:7000/", timeout=5.0, max_tasks=4)
        objective = Objective(id="o1", title="Research wind farms", complexity=6)

        text = await client.propose_tasks(http_client, objective)

        assert text == "1. Survey sites"
        url = http_client.post.await_args.args[0]
        payload = http_client.post.await_args.kwargs["json"]
        assert url == "http://gateway:7000/generate"
        assert http_client.post.await_args.kwargs["timeout"] == 5.0
        assert "at most 4 task titles" in payload["system_prompt"]
        assert "Objective: Research wind farms" in payload["user_prompt"]
        assert "Complexity (1-10): 6" in payload["user_prompt"]
        assert payload["provider"] == "mock"
        assert payload["metadata"] == {"objective_id": "o1"}
        http_client.post.return_value.raise_for_status.assert_called_once()

    @pytest.mark.asyncio
    async def test_blank_output_text_is_rejected(self):
        client = LLMGatewayClient(base_url="http://gateway:7000")

        with pytest.raises(ValueError):
            await client.generate(http_client_returning({"output_text": "  "}), "system", "user")

    def test_builder_reads_environment(self, monkeypatch):
        monkeypatch.setenv("LLM_GATEWAY_URL", "http://localhost:9000")
        monkeypatch.setenv("LLM_PROVIDER", "bedrock")
        monkeypatch.setenv("LLM_GATEWAY_TIMEOUT", "12")
        monkeypatch.setenv("LLM_MAX_TASKS", "5")

        client = build_llm_gateway_client()

        assert client.base_url == "http://localhost:9000"
        assert client.provider == "bedrock"
        assert client.timeout == 12.0
        assert client.max_tasks == 5
