"""Entry point wiring the FastAPI application for the agent loop."""

from __future__ import annotations

import logging
import os

import httpx
import redis.asyncio as redis
from fastapi import FastAPI

from shared.llm_gateway_client import build_llm_gateway_client

from .api import routes
from .config import build_service_config, build_settings
from .core.dispatcher import Dispatcher
from .core.memory import InMemoryAdapter, RedisMemoryAdapter
from .planner.controller import PlannerController
from .planner.decomposer import GatewayDecomposer, TemplateDecomposer
from .planner.learning import LearningSystem

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def build_app() -> FastAPI:
    """Create and configure the FastAPI instance."""
    app = FastAPI(title="Adaptive Agent Loop", version="0.1.0")

    config = build_service_config()
    settings = build_settings()

    redis_client = None
    if config.memory_backend == "redis":
        redis_client = redis.Redis(
            host=config.redis_host,
            port=config.redis_port,
            decode_responses=False,
        )
        memory = RedisMemoryAdapter(redis_client)
    else:
        memory = InMemoryAdapter()

    http_client = httpx.AsyncClient()
    templates = TemplateDecomposer()
    decomposer = templates
    if settings.use_ai_decomposition:
        decomposer = GatewayDecomposer(
            llm_client=build_llm_gateway_client(),
            http_client=http_client,
            fallback=templates,
        )
    planner = PlannerController(decomposer=decomposer, learning=LearningSystem())
    dispatcher = Dispatcher(planner=planner, memory=memory, settings=settings)
    logger.info(
        "Agent loop configured (memory=%s, ai_decomposition=%s)",
        config.memory_backend,
        settings.use_ai_decomposition,
    )

    app.include_router(routes.router)
    app.dependency_overrides[routes.get_dispatcher] = lambda: dispatcher

    @app.on_event("startup")
    async def _startup() -> None:
        await dispatcher.restore()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await dispatcher.stop_simulation()
        await http_client.aclose()
        if redis_client is not None:
            await redis_client.aclose()

    return app


app = build_app()
