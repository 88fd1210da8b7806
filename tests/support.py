"""Deterministic helpers shared by the test modules."""

from __future__ import annotations

from shared.schemas import Task

PASS = 0.99
FAIL = 0.0


class ScriptedRandom:
    """Stand-in for ``random.Random`` replaying scripted failure rolls.

    ``random()`` pops the next scripted roll and falls back to ``default``;
    ``uniform()`` always returns the midpoint so timings are predictable.
    """

    def __init__(self, rolls: list[float] | None = None, default: float = PASS) -> None:
        self.rolls = list(rolls or [])
        self.default = default

    def random(self) -> float:
        if self.rolls:
            return self.rolls.pop(0)
        return self.default

    def uniform(self, a: float, b: float) -> float:
        return (a + b) / 2


def make_task(objective_id: str, task_id: str, **overrides) -> Task:
    values = {
        "id": task_id,
        "objective_id": objective_id,
        "title": f"Task {task_id}",
        "priority": 5,
        "complexity": 5,
        "estimated_duration": 30.0,
    }
    values.update(overrides)
    return Task(**values)
