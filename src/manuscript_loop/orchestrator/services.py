"""Use-case services for the manuscript task queue."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from manuscript_loop.orchestrator.breaker import CircuitBreaker
from manuscript_loop.orchestrator.errors import TaskStoreError
from manuscript_loop.orchestrator.lifecycle import build_milestone_task
from manuscript_loop.orchestrator.models import (
    MILESTONE_ORDER,
    LoopState,
    Milestone,
    TaskCreate,
    TaskKind,
)
from manuscript_loop.orchestrator.progress import ProgressSummary, summarize
from manuscript_loop.orchestrator.repository import TaskStore
from manuscript_loop.orchestrator.resolver import resolve
from manuscript_loop.orchestrator.scoring import ScoreBreakdown, explain, rank
from manuscript_loop.orchestrator.snapshot import (
    build_snapshot,
    read_snapshot,
    write_snapshot,
)
from manuscript_loop.orchestrator.validation import ValidationReport, validate_tasks

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SeedResult:
    """Tasks created and chapters skipped by one seeding run."""

    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RankedCandidate:
    task_id: str
    title: str
    breakdown: ScoreBreakdown


def chapter_key(number: int) -> str:
    return f"ch{number:02d}"


class LoopService:
    """Operator use cases on top of the task store."""

    def __init__(self, *, store: TaskStore, breaker_threshold: int, review_period: int) -> None:
        self.store = store
        self.breaker_threshold = breaker_threshold
        self.review_period = review_period

    def seed_chapters(self, count: int) -> SeedResult:
        """Create a ``draft`` task for chapters ``ch01..chNN`` that have no milestone task yet."""

        if count < 1:
            raise ValueError("Chapter count must be >= 1.")
        result = SeedResult()
        for number in range(1, count + 1):
            self._seed_chapter(
                result,
                build_milestone_task(chapter_key(number), Milestone.DRAFT),
            )
        return result

    def seed_features(self, features: Mapping[str, Any]) -> SeedResult:
        """Seed from a ``features.json`` chapter milestone map.

        Each chapter gets a task for its first milestone not marked done;
        fully done chapters are skipped.
        """

        chapters = features.get("chapters")
        if not isinstance(chapters, dict):
            raise ValueError("features.chapters must be an object keyed by chapter")
        result = SeedResult()
        for chapter in sorted(chapters):
            entry = chapters[chapter]
            if not isinstance(entry, dict):
                raise ValueError(f"features.chapters.{chapter} must be an object")
            milestones = entry.get("milestones", {})
            if not isinstance(milestones, dict):
                raise ValueError(f"features.chapters.{chapter}.milestones must be an object")
            unknown = sorted(set(milestones) - {item.value for item in MILESTONE_ORDER})
            if unknown:
                raise ValueError(
                    f"features.chapters.{chapter} has unknown milestones: {', '.join(unknown)}",
                )
            pending = next(
                (item for item in MILESTONE_ORDER if not milestones.get(item.value, False)),
                None,
            )
            if pending is None:
                result.skipped.append(chapter)
                continue
            title = str(entry.get("title", "")).strip()
            payload = build_milestone_task(
                chapter,
                pending,
                description=f"Complete remaining milestones for {title}" if title else "",
            )
            if title:
                payload.payload = {"chapter_title": title}
            self._seed_chapter(result, payload)
        return result

    def add_task(self, payload: TaskCreate) -> str:
        return self.store.create(payload).task_id

    def reset_breaker(self) -> LoopState:
        """Operator reset of the circuit breaker; failure history stays in task events."""

        state = self.store.load_loop_state()
        breaker = CircuitBreaker.from_state(state, threshold=self.breaker_threshold)
        breaker.reset()
        state = breaker.apply_to(state)
        self.store.save_loop_state(state)
        logger.info("Circuit breaker reset by operator")
        return state

    def breaker(self) -> CircuitBreaker:
        return CircuitBreaker.from_state(
            self.store.load_loop_state(),
            threshold=self.breaker_threshold,
        )

    def next_candidates(self, *, limit: int = 5) -> list[RankedCandidate]:
        """Preview the dispatch order without mutating the store."""

        tasks = self.store.list_tasks()
        candidates = resolve(tasks).eligible
        if not self.breaker().can_dispatch_content_task():
            candidates = [task for task in candidates if not task.is_content]
        now = self.store.clock()
        ranked = rank(candidates, tasks, now=now)[:limit]
        return [
            RankedCandidate(
                task_id=task.task_id,
                title=task.title,
                breakdown=explain(task, tasks, now=now),
            )
            for task, _ in ranked
        ]

    def progress(self) -> ProgressSummary:
        tasks = self.store.list_tasks()
        return summarize(
            tasks,
            self.store.load_loop_state(),
            breaker_threshold=self.breaker_threshold,
            review_period=self.review_period,
            dangling=[error.task_id for error in resolve(tasks).dangling],
        )

    def validate(self) -> ValidationReport:
        return validate_tasks(self.store.list_tasks())

    def dump(self, path: Path) -> int:
        tasks = self.store.list_tasks()
        write_snapshot(
            path,
            build_snapshot(tasks, self.store.load_loop_state(), now=self.store.clock()),
        )
        return len(tasks)

    def import_snapshot(self, path: Path) -> int:
        tasks, loop_state = read_snapshot(path)
        return self.store.import_tasks(tasks, loop_state=loop_state)

    def _seed_chapter(self, result: SeedResult, payload: TaskCreate) -> None:
        chapter = payload.chapter or ""
        existing = [
            task for task in self.store.list_by_chapter(chapter) if task.kind is TaskKind.MILESTONE
        ]
        if existing:
            result.skipped.append(chapter)
            return
        try:
            created = self.store.create(payload)
        except TaskStoreError as error:
            logger.warning("Skipping seed for %s: %s", chapter, error)
            result.skipped.append(chapter)
            return
        result.created.append(created.task_id)
