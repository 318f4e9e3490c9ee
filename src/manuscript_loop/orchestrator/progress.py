"""Progress summary over a task snapshot."""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field

from manuscript_loop.orchestrator.breaker import CircuitBreaker
from manuscript_loop.orchestrator.cadence import ReviewCadence
from manuscript_loop.orchestrator.models import (
    MILESTONE_ORDER,
    LoopState,
    Milestone,
    TaskKind,
    TaskStatus,
    TaskView,
)
from manuscript_loop.orchestrator.scoring import chapter_number


@dataclass(slots=True)
class ChapterProgress:
    chapter: str
    completed_milestones: int
    current_milestone: Milestone | None
    current_status: TaskStatus | None

    @property
    def percent(self) -> float:
        return round(self.completed_milestones * 100 / len(MILESTONE_ORDER), 1)

    @property
    def done(self) -> bool:
        return self.completed_milestones >= len(MILESTONE_ORDER)


@dataclass(slots=True)
class ProgressSummary:
    total_tasks: int
    by_status: dict[TaskStatus, int]
    chapters: list[ChapterProgress]
    milestone_completion: dict[Milestone, int]
    open_review_flagged: int
    loop_state: LoopState
    breaker_line: str
    next_sweep_at: int | None
    dangling: list[str] = field(default_factory=list)


def chapter_progress(tasks: Sequence[TaskView]) -> list[ChapterProgress]:
    """Per-chapter milestone frontier.

    A chapter's frontier is the position of its open milestone task, or one past
    its last completed milestone. Seeded chapters may start past ``draft``.
    """

    by_chapter: dict[str, list[TaskView]] = defaultdict(list)
    for task in tasks:
        if task.kind is TaskKind.MILESTONE and task.chapter and task.milestone is not None:
            by_chapter[task.chapter].append(task)

    chapters: list[ChapterProgress] = []
    for chapter in sorted(by_chapter, key=lambda key: (chapter_number(key) or 0, key)):
        frontier = 0
        current: TaskView | None = None
        for task in by_chapter[chapter]:
            if task.status is TaskStatus.COMPLETE:
                frontier = max(frontier, task.milestone.position + 1)
            elif current is None or task.milestone.position < current.milestone.position:
                current = task
        if current is not None:
            frontier = current.milestone.position
        chapters.append(
            ChapterProgress(
                chapter=chapter,
                completed_milestones=frontier,
                current_milestone=current.milestone if current is not None else None,
                current_status=current.status if current is not None else None,
            ),
        )
    return chapters


def summarize(
    tasks: Sequence[TaskView],
    loop_state: LoopState,
    *,
    breaker_threshold: int,
    review_period: int,
    dangling: Sequence[str] = (),
) -> ProgressSummary:
    counts = Counter(task.status for task in tasks)
    chapters = chapter_progress(tasks)
    milestone_completion = {
        milestone: sum(1 for item in chapters if item.completed_milestones > milestone.position)
        for milestone in MILESTONE_ORDER
    }
    breaker = CircuitBreaker.from_state(loop_state, threshold=breaker_threshold)
    return ProgressSummary(
        total_tasks=len(tasks),
        by_status={status: counts.get(status, 0) for status in TaskStatus},
        chapters=chapters,
        milestone_completion=milestone_completion,
        open_review_flagged=sum(
            1 for task in tasks if task.review_flagged and task.status is not TaskStatus.COMPLETE
        ),
        loop_state=loop_state,
        breaker_line=breaker.status_line(),
        next_sweep_at=ReviewCadence(review_period).next_sweep_at(loop_state.iteration_count),
        dangling=list(dangling),
    )


def render_progress_lines(summary: ProgressSummary) -> list[str]:
    """Human-readable progress report."""

    status_text = ", ".join(
        f"{status.value}={count}" for status, count in summary.by_status.items()
    )
    lines = [
        f"Iteration: {summary.loop_state.iteration_count}",
        f"Tasks: {summary.total_tasks} ({status_text})",
        summary.breaker_line,
        (
            f"Next review sweep: iteration {summary.next_sweep_at}"
            if summary.next_sweep_at is not None
            else "Review sweeps: disabled"
        ),
    ]
    if summary.loop_state.last_successful_task_id is not None:
        checkpoint_at = summary.loop_state.last_checkpoint_at
        lines.append(
            f"Last checkpoint: {summary.loop_state.last_successful_task_id}"
            + (f" at {checkpoint_at.isoformat()}" if checkpoint_at is not None else ""),
        )
    if summary.open_review_flagged:
        lines.append(f"Open review-flagged tasks: {summary.open_review_flagged}")

    if summary.chapters:
        chapter_count = len(summary.chapters)
        lines.append("Milestones:")
        for milestone, done in summary.milestone_completion.items():
            lines.append(f"  {milestone.value:<18} {done}/{chapter_count}")
        lines.append("Chapters:")
        for item in summary.chapters:
            if item.done:
                state = "final complete"
            elif item.current_milestone is not None:
                current_status = item.current_status.value if item.current_status else "?"
                state = f"{item.current_milestone.value} ({current_status})"
            else:
                state = "no open milestone"
            lines.append(f"  {item.chapter:<6} {item.percent:5.1f}%  {state}")

    if summary.dangling:
        lines.append(f"Dangling dependencies: {', '.join(summary.dangling)}")
    return lines
