"""Environment-driven configuration for the agent loop service."""

from __future__ import annotations

import os
from dataclasses import dataclass

from shared.schemas import SimulationSettings


@dataclass(slots=True)
class ServiceConfig:
    """Runtime wiring options for the control API process."""

    memory_backend: str = "memory"
    redis_host: str = "localhost"
    redis_port: int = 6379


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def build_service_config() -> ServiceConfig:
    return ServiceConfig(
        memory_backend=os.getenv("MEMORY_BACKEND", "memory").lower(),
        redis_host=os.getenv("REDIS_HOST", "localhost"),
        redis_port=int(os.getenv("REDIS_PORT", "6379")),
    )


def build_settings() -> SimulationSettings:
    """Read simulation knobs from ``SIM_*`` variables; unset ones keep defaults."""
    overrides: dict[str, object] = {}
    env_fields = {
        "max_iterations": "SIM_MAX_ITERATIONS",
        "simulation_speed": "SIM_SPEED",
        "concurrency_limit": "SIM_CONCURRENCY_LIMIT",
        "max_attempts": "SIM_MAX_ATTEMPTS",
        "backoff_base_ms": "SIM_BACKOFF_BASE_MS",
        "micro_steps": "SIM_MICRO_STEPS",
        "step_timeout": "SIM_STEP_TIMEOUT",
        "time_scale": "SIM_TIME_SCALE",
        "seed": "SIM_SEED",
    }
    for field_name, env_name in env_fields.items():
        value = os.getenv(env_name)
        if value is not None and value != "":
            overrides[field_name] = value
    overrides["use_ai_decomposition"] = _flag("USE_AI_DECOMPOSITION")
    return SimulationSettings.model_validate(overrides)
