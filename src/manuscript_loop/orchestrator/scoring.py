"""Deterministic task scoring and ranking.

Scores are a pure function of the task, the task snapshot it lives in, and a
caller-supplied ``now``. Higher scores dispatch first; ties fall back to the
oldest ``created_at`` and then the smallest id.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from manuscript_loop.orchestrator.models import Milestone, Priority, TaskKind, TaskView
from manuscript_loop.orchestrator.resolver import blocked_counts

_CHAPTER_PATTERN = re.compile(r"^ch(\d+)$")


@dataclass(frozen=True, slots=True)
class ScoreWeights:
    """Tunable score components."""

    priority: Mapping[Priority, int] = field(
        default_factory=lambda: {
            Priority.CRITICAL: 1000,
            Priority.HIGH: 750,
            Priority.MEDIUM: 500,
            Priority.NORMAL: 250,
            Priority.LOW: 100,
        },
    )
    kind: Mapping[TaskKind, int] = field(
        default_factory=lambda: {
            TaskKind.MILESTONE: 100,
            TaskKind.REMEDIATION: 80,
            TaskKind.GENERIC: 0,
            TaskKind.REVIEW: 0,
        },
    )
    milestone: Mapping[Milestone, int] = field(
        default_factory=lambda: {
            Milestone.DRAFT: 55,
            Milestone.CODE_WRITTEN: 50,
            Milestone.CODE_TESTED: 45,
            Milestone.REVIEWED: 40,
            Milestone.DIAGRAMS_COMPLETE: 35,
            Milestone.FINAL: 30,
        },
    )
    chapter_base: int = 20
    chapter_step: int = 5
    review_flagged: int = 200
    blocking_per_task: int = 25
    stale_after: timedelta = timedelta(hours=24)
    very_stale_after: timedelta = timedelta(hours=48)
    stale_bonus: int = 50
    review_base: int = 1_000_000


DEFAULT_WEIGHTS = ScoreWeights()


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
    """Per-component explanation of one task score."""

    task_id: str
    base: int
    priority: int
    kind: int
    chapter: int
    milestone: int
    review_flagged: int
    blocking: int
    staleness: int

    @property
    def total(self) -> int:
        return (
            self.base
            + self.priority
            + self.kind
            + self.chapter
            + self.milestone
            + self.review_flagged
            + self.blocking
            + self.staleness
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "base": self.base,
            "priority": self.priority,
            "kind": self.kind,
            "chapter": self.chapter,
            "milestone": self.milestone,
            "review_flagged": self.review_flagged,
            "blocking": self.blocking,
            "staleness": self.staleness,
            "total": self.total,
        }


def chapter_number(chapter: str | None) -> int | None:
    if chapter is None:
        return None
    match = _CHAPTER_PATTERN.match(chapter)
    if match is None:
        return None
    return int(match.group(1))


def explain(
    task: TaskView,
    tasks: Sequence[TaskView],
    *,
    now: datetime,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
    blocked: Mapping[str, int] | None = None,
) -> ScoreBreakdown:
    """Compute the score components for ``task`` within snapshot ``tasks``."""

    if blocked is None:
        blocked = blocked_counts(tasks)

    number = chapter_number(task.chapter)
    chapter_bonus = 0
    if number is not None:
        chapter_bonus = max(0, (weights.chapter_base - number) * weights.chapter_step)

    age = now - task.created_at
    staleness = 0
    if age >= weights.stale_after:
        staleness += weights.stale_bonus
    if age >= weights.very_stale_after:
        staleness += weights.stale_bonus

    return ScoreBreakdown(
        task_id=task.task_id,
        base=weights.review_base if task.kind is TaskKind.REVIEW else 0,
        priority=weights.priority.get(task.priority, 0),
        kind=weights.kind.get(task.kind, 0),
        chapter=chapter_bonus,
        milestone=weights.milestone.get(task.milestone, 0) if task.milestone is not None else 0,
        review_flagged=weights.review_flagged if task.review_flagged else 0,
        blocking=weights.blocking_per_task * blocked.get(task.task_id, 0),
        staleness=staleness,
    )


def score(
    task: TaskView,
    tasks: Sequence[TaskView],
    *,
    now: datetime,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> int:
    return explain(task, tasks, now=now, weights=weights).total


def rank(
    candidates: Sequence[TaskView],
    tasks: Sequence[TaskView],
    *,
    now: datetime,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> list[tuple[TaskView, int]]:
    """Order candidates by score desc, ``created_at`` asc, id asc."""

    blocked = blocked_counts(tasks)
    scored = [
        (task, explain(task, tasks, now=now, weights=weights, blocked=blocked).total)
        for task in candidates
    ]
    scored.sort(key=lambda item: (-item[1], item[0].created_at, item[0].task_id))
    return scored
