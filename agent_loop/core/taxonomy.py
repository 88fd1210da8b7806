"""Keyword heuristics that classify free-text task titles.

The keyword lists are illustrative; callers only rely on every title mapping
to exactly one task type.
"""

from __future__ import annotations

import re

TASK_TYPE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("research", ("research", "investigate", "gather")),
    ("design", ("design", "plan", "architecture")),
    ("implementation", ("implement", "build", "create")),
    ("analysis", ("analyze", "analyse", "evaluate", "assess")),
    ("optimization", ("optimize", "improve", "enhance")),
    ("testing", ("test", "validate", "verify")),
]

# Extra effective complexity contributed by technical terms in a title.
TECHNICAL_KEYWORDS: list[tuple[str, float]] = [
    (r"\balgorithms?\b", 2.0),
    (r"\boptimi[sz]ation\b", 2.0),
    (r"\bintegrations?\b", 1.5),
    (r"\bapis?\b", 1.5),
    (r"\bmachine learning\b", 2.5),
    (r"\bai\b", 2.5),
]


def classify_task_type(title: str) -> str:
    lowered = title.lower()
    for task_type, keywords in TASK_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return task_type
    return "general"


def technical_weight(title: str) -> float:
    lowered = title.lower()
    return sum(weight for pattern, weight in TECHNICAL_KEYWORDS if re.search(pattern, lowered))
