"""HTTP client for the LLM gateway consulted by AI task decomposition."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import httpx

from .schemas import Objective

DECOMPOSITION_PROMPT = (
    "You break objectives into short, actionable tasks. "
    "Reply with a numbered list of at most {max_tasks} task titles and nothing else."
)


@dataclass(slots=True)
class LLMGatewayClient:
    """Calls a gateway exposing ``POST /generate`` and returns its ``output_text``."""

    base_url: str
    provider: str = "mock"
    timeout: float = 60.0
    max_tasks: int = 8

    async def generate(
        self,
        http_client: httpx.AsyncClient,
        system_prompt: str,
        user_prompt: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        response = await http_client.post(
            f"{self.base_url.rstrip('/')}/generate",
            json={
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "provider": self.provider,
                "metadata": metadata or {},
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        text = response.json().get("output_text")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("LLM gateway response did not contain output_text.")
        return text

    async def propose_tasks(self, http_client: httpx.AsyncClient, objective: Objective) -> str:
        """Ask the gateway for a numbered task list covering ``objective``."""
        user_prompt = "\n".join(
            [
                f"Objective: {objective.title}",
                f"Description: {objective.description or 'n/a'}",
                f"Complexity (1-10): {objective.complexity}",
            ]
        )
        return await self.generate(
            http_client,
            DECOMPOSITION_PROMPT.format(max_tasks=self.max_tasks),
            user_prompt,
            metadata={"objective_id": objective.id},
        )


def build_llm_gateway_client() -> LLMGatewayClient:
    return LLMGatewayClient(
        base_url=os.getenv("LLM_GATEWAY_URL", "http://llm-gateway:7000"),
        provider=os.getenv("LLM_PROVIDER", "mock"),
        timeout=float(os.getenv("LLM_GATEWAY_TIMEOUT", "60")),
        max_tasks=int(os.getenv("LLM_MAX_TASKS", "8")),
    )
