"""Dependency resolution over a task snapshot."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from manuscript_loop.orchestrator.errors import DanglingDependencyError
from manuscript_loop.orchestrator.models import TaskStatus, TaskView

RUNNABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.ELIGIBLE})


@dataclass(slots=True)
class Resolution:
    """Eligible tasks plus dangling-dependency diagnostics."""

    eligible: list[TaskView] = field(default_factory=list)
    dangling: list[DanglingDependencyError] = field(default_factory=list)


def resolve(tasks: Sequence[TaskView]) -> Resolution:
    """Split a snapshot into runnable tasks and dangling-dependency diagnostics.

    A runnable task is eligible only when every dependency id names a ``complete``
    task. A task naming a missing id can never run and is reported instead.
    """

    by_id = {task.task_id: task for task in tasks}
    resolution = Resolution()
    for task in sorted(tasks, key=lambda item: (item.created_at, item.task_id)):
        if task.status is TaskStatus.COMPLETE:
            continue
        missing = [dependency for dependency in task.depends_on if dependency not in by_id]
        if missing:
            resolution.dangling.append(DanglingDependencyError(task.task_id, missing))
            continue
        if task.status not in RUNNABLE_STATUSES:
            continue
        if all(by_id[dependency].status is TaskStatus.COMPLETE for dependency in task.depends_on):
            resolution.eligible.append(task)
    return resolution


def eligible(tasks: Sequence[TaskView]) -> list[TaskView]:
    return resolve(tasks).eligible


def blocked_counts(tasks: Iterable[TaskView]) -> Counter[str]:
    """Number of non-complete tasks waiting on each task id."""

    counts: Counter[str] = Counter()
    for task in tasks:
        if task.status is TaskStatus.COMPLETE:
            continue
        for dependency in set(task.depends_on):
            counts[dependency] += 1
    return counts
