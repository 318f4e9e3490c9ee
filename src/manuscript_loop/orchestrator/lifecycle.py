"""Status state machine, dependency cycles, and chapter milestone ordering."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence

from manuscript_loop.orchestrator.errors import InvalidTransitionError
from manuscript_loop.orchestrator.models import (
    Milestone,
    Priority,
    TaskCreate,
    TaskKind,
    TaskStatus,
    TaskView,
)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ELIGIBLE}),
    TaskStatus.ELIGIBLE: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETE, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETE: frozenset(),
}

# Dispatch has not started yet for these.
OPEN_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.ELIGIBLE})

TASK_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,199}")


def check_status_transition(task_id: str, current: TaskStatus, target: TaskStatus) -> None:
    """Raise if ``current -> target`` is not an edge of the task state machine."""

    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(task_id, f"{current.value} -> {target.value}")


def find_cycle(
    task_id: str,
    depends_on: Iterable[str],
    graph: Mapping[str, Sequence[str]],
) -> list[str] | None:
    """Return a dependency path from ``task_id`` back to itself, if any.

    ``graph`` maps existing task ids to their dependencies; ``depends_on`` is the
    proposed dependency set of ``task_id`` and replaces any entry it has in ``graph``.
    """

    stack: list[tuple[str, list[str]]] = [
        (dependency, [task_id, dependency]) for dependency in sorted(set(depends_on))
    ]
    visited: set[str] = set()
    while stack:
        current, path = stack.pop()
        if current == task_id:
            return path
        if current in visited:
            continue
        visited.add(current)
        for dependency in sorted(graph.get(current, ()), reverse=True):
            stack.append((dependency, [*path, dependency]))
    return None


def check_task_id(task_id: str) -> None:
    """Task ids name per-task work directories, so they must be one plain path segment."""

    if not TASK_ID_PATTERN.fullmatch(task_id):
        raise ValueError(
            f"invalid task id {task_id!r}: use letters, digits, '.', '_' or '-', "
            "starting with a letter or digit",
        )


def milestone_task_id(chapter: str, milestone: Milestone) -> str:
    return f"{chapter}-{milestone.value}"


def milestone_title(chapter: str, milestone: Milestone) -> str:
    return f"{chapter}: {milestone.value.replace('_', ' ')}"


def build_milestone_task(
    chapter: str,
    milestone: Milestone,
    *,
    depends_on: tuple[str, ...] = (),
    description: str = "",
) -> TaskCreate:
    """Create payload for one chapter milestone task."""

    return TaskCreate(
        task_id=milestone_task_id(chapter, milestone),
        title=milestone_title(chapter, milestone),
        kind=TaskKind.MILESTONE,
        chapter=chapter,
        milestone=milestone,
        description=description,
        priority=Priority.HIGH,
        depends_on=depends_on,
    )


def next_milestone_task(completed: TaskView) -> TaskCreate | None:
    """Follow-up task for a completed milestone task, or None after ``final``."""

    if completed.kind is not TaskKind.MILESTONE:
        return None
    if completed.chapter is None or completed.milestone is None:
        return None
    following = completed.milestone.next()
    if following is None:
        return None
    return build_milestone_task(
        completed.chapter,
        following,
        depends_on=(completed.task_id,),
        description=completed.description,
    )


def validate_task_shape(payload: TaskCreate) -> None:
    """Reject malformed payloads before any store validation."""

    if payload.task_id is not None:
        check_task_id(payload.task_id)
    if not payload.title or not payload.title.strip():
        raise ValueError("title is required")
    if payload.kind is TaskKind.MILESTONE:
        if not payload.chapter or payload.milestone is None:
            raise ValueError("milestone tasks require both chapter and milestone")
    elif payload.milestone is not None:
        raise ValueError(f"only milestone tasks carry a milestone, got kind={payload.kind.value}")


def check_milestone_create(payload: TaskCreate, chapter_tasks: Iterable[TaskView]) -> None:
    """Enforce the per-chapter milestone total order on task creation."""

    if payload.kind is not TaskKind.MILESTONE or payload.milestone is None:
        return
    task_id = payload.task_id or "<new>"
    for existing in chapter_tasks:
        if existing.kind is not TaskKind.MILESTONE or existing.milestone is None:
            continue
        if existing.status is not TaskStatus.COMPLETE:
            raise InvalidTransitionError(
                task_id,
                f"chapter {payload.chapter} already has open milestone task "
                f"{existing.task_id} ({existing.milestone.value})",
            )
        if existing.milestone.position >= payload.milestone.position:
            raise InvalidTransitionError(
                task_id,
                f"chapter {payload.chapter} already completed {existing.milestone.value}; "
                f"cannot move back to {payload.milestone.value}",
            )


def check_milestone_patch(
    task: TaskView,
    milestone: Milestone,
    chapter_tasks: Iterable[TaskView],
) -> None:
    """Only an open task may be patched, and only onto the milestone that directly
    follows the chapter's last completed one.

    A chapter with no completed milestone keeps whatever milestone its open task
    was created at.
    """

    if task.kind is not TaskKind.MILESTONE or task.milestone is None:
        raise InvalidTransitionError(task.task_id, "only milestone tasks carry a milestone")
    if task.status not in OPEN_STATUSES:
        raise InvalidTransitionError(
            task.task_id,
            f"milestone of a {task.status.value} task cannot change",
        )
    completed = [
        existing
        for existing in chapter_tasks
        if existing.task_id != task.task_id
        and existing.milestone is not None
        and existing.status is TaskStatus.COMPLETE
    ]
    if completed:
        last = max(completed, key=lambda existing: existing.milestone.position)
        expected = last.milestone.next()
        if expected is None:
            raise InvalidTransitionError(
                task.task_id,
                f"chapter {task.chapter} already completed {last.milestone.value}",
            )
        reason = f"chapter {task.chapter} completed {last.milestone.value}"
    else:
        expected = task.milestone
        reason = f"chapter {task.chapter} has no completed milestone"
    if milestone is not expected:
        raise InvalidTransitionError(
            task.task_id,
            f"milestone {task.milestone.value} -> {milestone.value} rejected: "
            f"{reason}, next is {expected.value}",
        )
