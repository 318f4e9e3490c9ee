"""Whole-graph validation of a task snapshot."""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field

from manuscript_loop.orchestrator.errors import (
    CyclicDependencyError,
    DuplicateIdError,
    InvalidTransitionError,
    TaskStoreError,
)
from manuscript_loop.orchestrator.lifecycle import TASK_ID_PATTERN
from manuscript_loop.orchestrator.models import TaskKind, TaskStatus, TaskView
from manuscript_loop.orchestrator.resolver import resolve

DANGLING_DEPENDENCY = "dangling_dependency"
DUPLICATE_ID = "duplicate_id"
CYCLE = "cycle"
INVALID_TASK = "invalid_task"
MILESTONE_ORDER = "milestone_order"
MULTIPLE_OPEN_MILESTONES = "multiple_open_milestones"


@dataclass(slots=True)
class GraphIssue:
    code: str
    task_id: str
    error: TaskStoreError

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass(slots=True)
class ValidationReport:
    task_count: int
    issues: list[GraphIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def by_code(self) -> dict[str, int]:
        return dict(Counter(issue.code for issue in self.issues))


def validate_tasks(tasks: Sequence[TaskView]) -> ValidationReport:
    """Check ids, dependency graph, and per-chapter milestone ordering."""

    report = ValidationReport(task_count=len(tasks))
    report.issues.extend(_duplicate_issues(tasks))
    report.issues.extend(_shape_issues(tasks))
    report.issues.extend(
        GraphIssue(code=DANGLING_DEPENDENCY, task_id=error.task_id, error=error)
        for error in resolve(tasks).dangling
    )
    report.issues.extend(_cycle_issues(tasks))
    report.issues.extend(_milestone_issues(tasks))
    return report


def blocking_issues(tasks: Sequence[TaskView]) -> list[GraphIssue]:
    """Issues that make a snapshot unloadable; dangling dependencies are tolerated."""

    return [issue for issue in validate_tasks(tasks).issues if issue.code != DANGLING_DEPENDENCY]


def render_validation_lines(report: ValidationReport) -> list[str]:
    if report.ok:
        return [f"OK: {report.task_count} tasks, no issues."]
    lines = [f"Found {len(report.issues)} issue(s) in {report.task_count} tasks:"]
    lines.extend(f"- [{issue.code}] {issue.message}" for issue in report.issues)
    return lines


def _duplicate_issues(tasks: Sequence[TaskView]) -> list[GraphIssue]:
    counts = Counter(task.task_id for task in tasks)
    return [
        GraphIssue(code=DUPLICATE_ID, task_id=task_id, error=DuplicateIdError(task_id))
        for task_id, count in sorted(counts.items())
        if count > 1
    ]


def _shape_issues(tasks: Sequence[TaskView]) -> list[GraphIssue]:
    issues: list[GraphIssue] = []
    for task in tasks:
        message: str | None = None
        if not TASK_ID_PATTERN.fullmatch(task.task_id):
            issues.append(
                GraphIssue(
                    code=INVALID_TASK,
                    task_id=task.task_id,
                    error=InvalidTransitionError(task.task_id, "task id is not a plain name"),
                ),
            )
        if task.kind is TaskKind.MILESTONE and (task.chapter is None or task.milestone is None):
            message = "milestone tasks require both chapter and milestone"
        elif task.kind is not TaskKind.MILESTONE and task.milestone is not None:
            message = f"only milestone tasks carry a milestone, got kind={task.kind.value}"
        elif task.task_id in task.depends_on:
            issues.append(
                GraphIssue(
                    code=CYCLE,
                    task_id=task.task_id,
                    error=CyclicDependencyError(task.task_id, [task.task_id, task.task_id]),
                ),
            )
        if message is not None:
            issues.append(
                GraphIssue(
                    code=INVALID_TASK,
                    task_id=task.task_id,
                    error=InvalidTransitionError(task.task_id, message),
                ),
            )
    return issues


def _cycle_issues(tasks: Sequence[TaskView]) -> list[GraphIssue]:
    graph = {task.task_id: sorted(set(task.depends_on)) for task in tasks}
    white, grey, black = 0, 1, 2
    color = dict.fromkeys(graph, white)
    seen_cycles: set[tuple[str, ...]] = set()
    issues: list[GraphIssue] = []

    for root in sorted(graph):
        if color[root] != white:
            continue
        path: list[str] = [root]
        iterators = [iter(graph[root])]
        color[root] = grey
        while iterators:
            next_id = next(iterators[-1], None)
            if next_id is None:
                color[path.pop()] = black
                iterators.pop()
                continue
            if next_id not in graph or next_id == path[-1]:
                continue
            if color[next_id] == grey:
                cycle = path[path.index(next_id) :]
                canonical = _canonical_cycle(cycle)
                if canonical not in seen_cycles:
                    seen_cycles.add(canonical)
                    issues.append(
                        GraphIssue(
                            code=CYCLE,
                            task_id=canonical[0],
                            error=CyclicDependencyError(
                                canonical[0],
                                [*canonical, canonical[0]],
                            ),
                        ),
                    )
                continue
            if color[next_id] == white:
                color[next_id] = grey
                path.append(next_id)
                iterators.append(iter(graph[next_id]))
    return issues


def _canonical_cycle(cycle: list[str]) -> tuple[str, ...]:
    start = cycle.index(min(cycle))
    return tuple(cycle[start:] + cycle[:start])


def _milestone_issues(tasks: Sequence[TaskView]) -> list[GraphIssue]:
    by_chapter: dict[str, list[TaskView]] = defaultdict(list)
    for task in tasks:
        if task.kind is TaskKind.MILESTONE and task.chapter and task.milestone is not None:
            by_chapter[task.chapter].append(task)

    issues: list[GraphIssue] = []
    for chapter in sorted(by_chapter):
        chapter_tasks = sorted(by_chapter[chapter], key=lambda item: item.milestone.position)
        completed = [task for task in chapter_tasks if task.status is TaskStatus.COMPLETE]
        open_tasks = [task for task in chapter_tasks if task.status is not TaskStatus.COMPLETE]

        if len(open_tasks) > 1:
            names = ", ".join(task.task_id for task in open_tasks)
            issues.append(
                GraphIssue(
                    code=MULTIPLE_OPEN_MILESTONES,
                    task_id=open_tasks[1].task_id,
                    error=InvalidTransitionError(
                        open_tasks[1].task_id,
                        f"chapter {chapter} has {len(open_tasks)} open milestone tasks: {names}",
                    ),
                ),
            )

        positions = [task.milestone.position for task in completed]
        if len(set(positions)) != len(positions):
            issues.append(
                GraphIssue(
                    code=MILESTONE_ORDER,
                    task_id=completed[0].task_id,
                    error=InvalidTransitionError(
                        completed[0].task_id,
                        f"chapter {chapter} completed the same milestone twice",
                    ),
                ),
            )
        if not completed:
            continue
        last_completed = max(positions)
        skipped = sorted(set(range(min(positions), last_completed + 1)) - set(positions))
        if skipped:
            issues.append(
                GraphIssue(
                    code=MILESTONE_ORDER,
                    task_id=completed[-1].task_id,
                    error=InvalidTransitionError(
                        completed[-1].task_id,
                        f"chapter {chapter} completed {completed[-1].milestone.value} "
                        f"with {len(skipped)} earlier milestone(s) incomplete",
                    ),
                ),
            )
        for task in open_tasks:
            if task.milestone.position <= last_completed:
                issues.append(
                    GraphIssue(
                        code=MILESTONE_ORDER,
                        task_id=task.task_id,
                        error=InvalidTransitionError(
                            task.task_id,
                            f"open {task.milestone.value} task is at or before completed "
                            f"milestone {completed[-1].milestone.value} in chapter {chapter}",
                        ),
                    ),
                )
    return issues
