"""Objective decomposition into concrete tasks.

``TemplateDecomposer`` is the built-in heuristic generator. ``GatewayDecomposer``
asks an LLM gateway for task titles and falls back to the templates whenever
the gateway is unavailable or returns something unusable.
"""

from __future__ import annotations

import itertools
import logging
import re
from dataclasses import dataclass
from typing import Protocol

import httpx

from shared.llm_gateway_client import LLMGatewayClient
from shared.schemas import Objective, Task

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TaskTemplate:
    title: str
    description: str
    priority: int
    complexity_offset: int
    complexity_cap: int
    estimated_duration: float
    depends_on: int | None = None


TEMPLATES: list[tuple[tuple[str, ...], list[TaskTemplate]]] = [
    (
        ("research",),
        [
            TaskTemplate(
                "Research and gather information",
                "Collect relevant data and resources for the research objective",
                9, 0, 6, 30,
            ),
            TaskTemplate(
                "Analyze and synthesize findings",
                "Process the gathered information and identify key insights",
                8, 1, 8, 45, depends_on=0,
            ),
        ],
    ),
    (
        ("build", "create"),
        [
            TaskTemplate(
                "Design and plan structure",
                "Create detailed plans and design specifications",
                9, 0, 7, 60,
            ),
            TaskTemplate(
                "Implement core components",
                "Build the main functional components",
                8, 1, 9, 120, depends_on=0,
            ),
            TaskTemplate(
                "Test and validate functionality",
                "Verify that all components work correctly",
                7, 0, 6, 30, depends_on=1,
            ),
        ],
    ),
    (
        ("optimize", "improve"),
        [
            TaskTemplate(
                "Assess current state",
                "Evaluate the current system or process",
                9, 0, 6, 20,
            ),
            TaskTemplate(
                "Identify improvement opportunities",
                "Find specific areas that can be enhanced",
                8, 1, 8, 40, depends_on=0,
            ),
            TaskTemplate(
                "Implement optimizations",
                "Apply the identified improvements",
                7, 2, 9, 90, depends_on=1,
            ),
        ],
    ),
]

GENERIC_TEMPLATES: list[TaskTemplate] = [
    TaskTemplate(
        "Break down the objective",
        "Analyze and define clear sub-goals",
        9, 0, 5, 15,
    ),
    TaskTemplate(
        "Execute primary actions",
        "Carry out the main tasks to achieve the objective",
        8, 0, 7, 60,
    ),
    TaskTemplate(
        "Review and finalize",
        "Validate results and ensure objective completion",
        7, 0, 6, 30, depends_on=1,
    ),
]

_NUMBERED_LINE = re.compile(r"^\s*(?:\d+[.)]|[-*])\s+(?P<title>.+?)\s*$")


class Decomposer(Protocol):
    async def decompose(self, objective: Objective) -> list[Task]: ...


class TemplateDecomposer:
    """Keyword-driven templates with dependency chains inside each template."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)

    def templates_for(self, objective: Objective) -> list[TaskTemplate]:
        title = objective.title.lower()
        selected: list[TaskTemplate] = []
        for keywords, templates in TEMPLATES:
            if any(keyword in title for keyword in keywords):
                offset = len(selected)
                selected.extend(
                    template
                    if template.depends_on is None
                    else _shift(template, offset)
                    for template in templates
                )
        return selected or list(GENERIC_TEMPLATES)

    def next_task_id(self, objective: Objective) -> str:
        return f"{objective.id}-T{next(self._counter)}"

    async def decompose(self, objective: Objective) -> list[Task]:
        return self.build(objective)

    def build(self, objective: Objective) -> list[Task]:
        tasks: list[Task] = []
        for template in self.templates_for(objective):
            dependencies = [] if template.depends_on is None else [tasks[template.depends_on].id]
            tasks.append(
                Task(
                    id=self.next_task_id(objective),
                    objective_id=objective.id,
                    title=template.title,
                    description=template.description,
                    priority=template.priority,
                    complexity=max(1, min(objective.complexity + template.complexity_offset, template.complexity_cap)),
                    estimated_duration=template.estimated_duration,
                    dependencies=dependencies,
                )
            )
        return tasks


def _shift(template: TaskTemplate, offset: int) -> TaskTemplate:
    return TaskTemplate(
        template.title,
        template.description,
        template.priority,
        template.complexity_offset,
        template.complexity_cap,
        template.estimated_duration,
        depends_on=template.depends_on + offset,
    )


def parse_task_titles(text: str, limit: int = 8) -> list[str]:
    """Extract list-item titles from a gateway response."""
    titles: list[str] = []
    for line in text.splitlines():
        match = _NUMBERED_LINE.match(line)
        if match:
            titles.append(match.group("title").strip().rstrip("."))
    return titles[:limit]


@dataclass(slots=True)
class GatewayDecomposer:
    """Asks the LLM gateway for task titles; templates cover every failure."""

    llm_client: LLMGatewayClient
    http_client: httpx.AsyncClient
    fallback: TemplateDecomposer

    async def decompose(self, objective: Objective) -> list[Task]:
        try:
            text = await self.llm_client.propose_tasks(self.http_client, objective)
            titles = parse_task_titles(text, limit=self.llm_client.max_tasks)
            if not titles:
                raise ValueError("LLM gateway returned no task titles.")
            return [
                Task(
                    id=self.fallback.next_task_id(objective),
                    objective_id=objective.id,
                    title=title,
                    description=f"Generated for objective: {objective.title}",
                    priority=max(1, 9 - index),
                    complexity=objective.complexity,
                    estimated_duration=30.0,
                )
                for index, title in enumerate(titles)
            ]
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "AI decomposition failed for objective %s, using templates: %s",
                objective.id,
                exc,
            )
            return self.fallback.build(objective)
