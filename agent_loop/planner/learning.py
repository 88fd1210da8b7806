"""Learning system that mines execution history for reusable insights.

Every terminal task is analyzed along independent dimensions (efficiency,
complexity mismatch, timing variance, dependency health). Raw metrics are
folded into pattern buckets keyed by task type, complexity range and
dependency-count range; populated buckets nudge the estimates of newly
generated tasks.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from shared.schemas import (
    InsightCategory,
    LearningInsight,
    LearningSnapshot,
    Objective,
    PatternBucket,
    StrategicRecommendation,
    Task,
    WorkStatus,
    utcnow,
)

from ..core.taxonomy import classify_task_type, technical_weight

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.6
RETENTION = timedelta(days=30)
PERSISTENT_CONFIDENCE = 0.8
MIN_PATTERN_OCCURRENCES = 3
ADAPTATION_THRESHOLD = 0.7
MAX_INSIGHTS = 500
FEEDBACK_RATE = 0.5
DURATION_BUFFER = 1.1

EFFICIENCY_THRESHOLD = 0.6
COMPLEXITY_GAP = 2
TIMING_VARIANCE_THRESHOLD = 0.3
CRITICAL_DEPENDENCY_SHARE = 0.3


def pattern_key(task: Task) -> str:
    """Bucket key: task type, complexity range of 2, dependency range of 2."""
    complexity_range = task.complexity // 2 * 2
    dependency_range = len(task.dependencies) // 2 * 2
    return f"{classify_task_type(task.title)}_{complexity_range}_{dependency_range}"


def attempt_efficiency(attempts: int) -> float:
    if attempts <= 1:
        return 1.0
    return max(0.3, 1 - 0.2 * (attempts - 1))


def duration_ratio(task: Task) -> float:
    actual = task.actual_duration or 0.0
    if actual <= 0:
        return 1.0
    return min(1.5, task.estimated_duration / actual)


def overall_efficiency(task: Task) -> float:
    return (
        0.4 * duration_ratio(task)
        + 0.3 * (task.progress / 100)
        + 0.3 * attempt_efficiency(task.attempts)
    )


def effective_complexity(task: Task) -> float:
    """Complexity re-estimated from dependency count, retries and technical terms."""
    complexity = float(task.complexity)
    dependency_count = len(task.dependencies)
    if dependency_count > 3:
        complexity += 1
    if dependency_count > 5:
        complexity += 1
    if task.attempts > 1:
        complexity += task.attempts * 0.5
    complexity += technical_weight(task.title)
    return max(1.0, min(10.0, complexity))


def timing_variance(task: Task) -> float | None:
    if task.actual_duration is None:
        return None
    return abs(task.actual_duration - task.estimated_duration) / task.estimated_duration


def critical_dependencies(task: Task, related: Mapping[str, Task]) -> list[str]:
    """Dependencies that were unfinished or took over 30% of the task's estimate."""
    threshold = task.estimated_duration * CRITICAL_DEPENDENCY_SHARE
    critical: list[str] = []
    for dep_id in task.dependencies:
        dependency = related.get(dep_id)
        if dependency is None or dependency.status != WorkStatus.COMPLETED:
            critical.append(dep_id)
        elif (dependency.actual_duration or 0.0) > threshold:
            critical.append(dep_id)
    return critical


@dataclass(slots=True)
class HistoricalPerformance:
    success_rate: float
    avg_complexity: float
    avg_duration: float
    sample_size: int


@dataclass(slots=True)
class LearningSystem:
    """Accumulates insights and pattern buckets across executions."""

    max_insights: int = MAX_INSIGHTS
    _insights: list[LearningInsight] = field(default_factory=list)
    _patterns: dict[str, PatternBucket] = field(default_factory=dict)

    @property
    def insights(self) -> list[LearningInsight]:
        return list(self._insights)

    @property
    def patterns(self) -> dict[str, PatternBucket]:
        return dict(self._patterns)

    def process_task_completion(
        self,
        task: Task,
        related_tasks: Iterable[Task] = (),
    ) -> list[LearningInsight]:
        """Analyze one terminal task and return the insights it produced."""
        if not task.status.is_terminal:
            raise ValueError(f"Task {task.id} is {task.status.value}; only terminal tasks are analyzed")

        related = {other.id: other for other in related_tasks}
        key = pattern_key(task)
        insights = self._execution_insights(task, related)
        self._update_pattern(key, task)
        insights.extend(self._adaptive_recommendations(task))

        stamped = [
            insight.model_copy(update={"pattern_key": key, "task_id": task.id})
            for insight in insights
        ]
        self._insights.extend(stamped)
        self.prune()
        logger.info(
            "Learned %d insights from task %s (%s, pattern %s)",
            len(stamped),
            task.id,
            task.status.value,
            key,
        )
        return stamped

    def _execution_insights(self, task: Task, related: Mapping[str, Task]) -> list[LearningInsight]:
        insights: list[LearningInsight] = []

        efficiency = overall_efficiency(task)
        if efficiency < EFFICIENCY_THRESHOLD:
            insights.append(
                LearningInsight(
                    category=InsightCategory.STRATEGY,
                    insight=(
                        f"Task execution efficiency is low ({efficiency:.1%}). Consider breaking "
                        "down complex tasks or improving the execution approach."
                    ),
                    confidence=0.8,
                )
            )

        effective = effective_complexity(task)
        if abs(effective - task.complexity) > COMPLEXITY_GAP:
            insights.append(
                LearningInsight(
                    category=InsightCategory.STRATEGY,
                    insight=(
                        f"Complexity assessment mismatch detected. Execution complexity "
                        f"({effective:.1f}) differs significantly from the estimate "
                        f"({task.complexity}); re-estimate similar tasks."
                    ),
                    confidence=0.7,
                )
            )

        variance = timing_variance(task)
        if variance is not None and variance > TIMING_VARIANCE_THRESHOLD:
            scope = "simple" if task.complexity <= 5 else "complex"
            insights.append(
                LearningInsight(
                    category=InsightCategory.TIMING,
                    insight=(
                        f"Time estimation variance is {variance:.1%}. Consider adjusting the "
                        f"estimation methodology for {scope} tasks."
                    ),
                    confidence=0.9,
                )
            )

        if task.status == WorkStatus.FAILED:
            critical = critical_dependencies(task, related)
            if critical:
                insights.append(
                    LearningInsight(
                        category=InsightCategory.DEPENDENCIES,
                        insight=(
                            f"{len(critical)} of {len(task.dependencies)} dependencies were "
                            "slow or unfinished. Review task sequencing and dependency resolution."
                        ),
                        confidence=0.7,
                    )
                )
        return insights

    def _adaptive_recommendations(self, task: Task) -> list[LearningInsight]:
        recommendations: list[LearningInsight] = []
        task_type = classify_task_type(task.title)
        history = self.historical_performance(task_type)
        if history.sample_size and history.success_rate < ADAPTATION_THRESHOLD:
            recommendations.append(
                LearningInsight(
                    category=InsightCategory.STRATEGY,
                    insight=(
                        f"Historical performance for {task_type} tasks is "
                        f"{history.success_rate:.1%}. Consider alternative approaches or "
                        "increased time allocation."
                    ),
                    confidence=0.8,
                )
            )
        if effective_complexity(task) > task.complexity + 1:
            recommendations.append(
                LearningInsight(
                    category=InsightCategory.PRIORITY,
                    insight=(
                        "Task complexity may have been underestimated. Allocate more "
                        "resources or break it into subtasks."
                    ),
                    confidence=0.7,
                )
            )
        return recommendations

    def _update_pattern(self, key: str, task: Task) -> PatternBucket:
        bucket = self._patterns.get(key)
        if bucket is None:
            bucket = PatternBucket(key=key, task_type=classify_task_type(task.title))
            self._patterns[key] = bucket

        bucket.occurrences += 1
        if task.status == WorkStatus.COMPLETED:
            bucket.successes += 1
        duration = task.actual_duration if task.actual_duration is not None else task.estimated_duration
        bucket.total_duration += duration
        count = bucket.occurrences
        bucket.avg_complexity += (task.complexity - bucket.avg_complexity) / count
        bucket.avg_dependencies += (len(task.dependencies) - bucket.avg_dependencies) / count
        return bucket

    def populated_buckets(self, task_type: str | None = None) -> list[PatternBucket]:
        return [
            bucket
            for bucket in self._patterns.values()
            if bucket.occurrences >= MIN_PATTERN_OCCURRENCES
            and (task_type is None or bucket.task_type == task_type)
        ]

    def historical_performance(self, task_type: str) -> HistoricalPerformance:
        """Aggregate performance over the populated buckets of ``task_type``."""
        buckets = self.populated_buckets(task_type)
        if not buckets:
            return HistoricalPerformance(success_rate=1.0, avg_complexity=5.0, avg_duration=0.0, sample_size=0)
        occurrences = sum(bucket.occurrences for bucket in buckets)
        return HistoricalPerformance(
            success_rate=sum(bucket.successes for bucket in buckets) / occurrences,
            avg_complexity=sum(bucket.avg_complexity for bucket in buckets) / len(buckets),
            avg_duration=sum(bucket.avg_duration for bucket in buckets) / len(buckets),
            sample_size=occurrences,
        )

    # Feedback

    def apply_learned_strategies(self, task: Task) -> Task:
        """Return ``task`` with estimates nudged toward a populated matching bucket."""
        key = pattern_key(task)
        bucket = self._patterns.get(key)
        if bucket is None or bucket.occurrences < MIN_PATTERN_OCCURRENCES:
            return task

        target_duration = bucket.avg_duration * DURATION_BUFFER
        duration = task.estimated_duration + FEEDBACK_RATE * (target_duration - task.estimated_duration)
        complexity = task.complexity + FEEDBACK_RATE * (bucket.avg_complexity - task.complexity)
        update: dict[str, object] = {
            "estimated_duration": max(duration, 1.0),
            "complexity": int(max(1, min(10, round(complexity)))),
        }
        if bucket.avg_dependencies > len(task.dependencies) + 0.5:
            update["learning"] = LearningInsight(
                category=InsightCategory.DEPENDENCIES,
                insight=(
                    f"Historical analysis suggests {bucket.task_type} tasks typically have "
                    f"{bucket.avg_dependencies:.1f} dependencies. Consider this for future planning."
                ),
                confidence=0.7,
                applied_to_next_tasks=True,
                pattern_key=key,
            )
        for insight in self._insights:
            if insight.pattern_key == key:
                insight.applied_to_next_tasks = True

        logger.debug(
            "Applied pattern %s to %s: duration %.1f -> %.1f, complexity %d -> %d",
            key,
            task.title,
            task.estimated_duration,
            update["estimated_duration"],
            task.complexity,
            update["complexity"],
        )
        return task.model_copy(update=update)

    def relevant_insights(self, task_title: str, limit: int = 10) -> list[LearningInsight]:
        """Confident insights relevant to the task type of ``task_title``, newest first."""
        task_type = classify_task_type(task_title)
        relevant = [
            insight
            for insight in self._insights
            if insight.confidence >= MIN_CONFIDENCE
            and (
                (insight.pattern_key or "").startswith(f"{task_type}_")
                or task_type in insight.insight.lower()
            )
        ]
        relevant.sort(key=lambda insight: insight.created_at, reverse=True)
        return relevant[:limit]

    def generate_strategic_recommendations(self, objective: Objective) -> list[StrategicRecommendation]:
        task_type = classify_task_type(objective.title)
        buckets = self.populated_buckets(task_type)
        recommendations: list[StrategicRecommendation] = []
        if not buckets:
            return recommendations

        success_rate = sum(bucket.success_rate for bucket in buckets) / len(buckets)
        if success_rate < ADAPTATION_THRESHOLD:
            recommendations.append(
                StrategicRecommendation(
                    type="success_rate",
                    priority="high",
                    description=(
                        f"Historical success rate for {task_type} tasks is {success_rate:.1%}. "
                        "Consider breaking into smaller tasks or allocating more time."
                    ),
                    implementation="Increase task granularity or extend time estimates",
                    expected_impact="Improve success rate by 15-25%",
                )
            )

        avg_complexity = sum(bucket.avg_complexity for bucket in buckets) / len(buckets)
        if avg_complexity > objective.complexity + 1:
            recommendations.append(
                StrategicRecommendation(
                    type="complexity",
                    priority="medium",
                    description=(
                        f"Average historical complexity for similar tasks is {avg_complexity:.1f}, "
                        f"higher than the estimated {objective.complexity}."
                    ),
                    implementation="Increase complexity estimates or break down tasks further",
                    expected_impact="Better resource allocation and scheduling",
                )
            )

        avg_duration = sum(bucket.avg_duration for bucket in buckets) / len(buckets)
        if avg_duration > objective.complexity * 15:
            recommendations.append(
                StrategicRecommendation(
                    type="timing",
                    priority="medium",
                    description=(
                        f"Historical average duration is {avg_duration:.0f} time units; "
                        "consider adjusting time estimates."
                    ),
                    implementation="Increase time estimates by 20-30% based on historical data",
                    expected_impact="Reduced deadline pressure and better execution quality",
                )
            )
        return recommendations

    # Log maintenance

    def prune(self, now: datetime | None = None) -> int:
        """Drop stale insights and bound the log; returns how many were removed."""
        cutoff = (now or utcnow()) - RETENTION
        before = len(self._insights)
        kept = [
            insight
            for insight in self._insights
            if insight.created_at > cutoff or insight.confidence > PERSISTENT_CONFIDENCE
        ]
        self._insights = kept[-self.max_insights:]
        return before - len(self._insights)

    def export_snapshot(self) -> LearningSnapshot:
        return LearningSnapshot(
            insights=[insight.model_copy() for insight in self._insights],
            patterns=[bucket.model_copy() for bucket in self._patterns.values()],
        )

    def import_snapshot(self, snapshot: LearningSnapshot) -> None:
        """Replace the current state with ``snapshot``."""
        self._insights = [insight.model_copy() for insight in snapshot.insights]
        self._patterns = {bucket.key: bucket.model_copy() for bucket in snapshot.patterns}
        self.prune()
        logger.info(
            "Imported learning snapshot with %d insights and %d patterns",
            len(self._insights),
            len(self._patterns),
        )
