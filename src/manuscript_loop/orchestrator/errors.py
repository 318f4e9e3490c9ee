"""Task store error taxonomy."""

from __future__ import annotations

from collections.abc import Iterable


class TaskStoreError(Exception):
    """Validation error raised by a task store call; prior state is untouched."""


class DuplicateIdError(TaskStoreError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task already exists: {task_id}")
        self.task_id = task_id


class NotFoundError(TaskStoreError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class CyclicDependencyError(TaskStoreError):
    def __init__(self, task_id: str, cycle: Iterable[str]) -> None:
        self.task_id = task_id
        self.cycle = tuple(cycle)
        super().__init__(
            f"Dependency cycle through {task_id}: {' -> '.join(self.cycle)}",
        )


class DanglingDependencyError(TaskStoreError):
    """A task depends on ids that do not exist; it can never become eligible.

    The resolver reports these as diagnostics instead of raising them.
    """

    def __init__(self, task_id: str, missing: Iterable[str]) -> None:
        self.task_id = task_id
        self.missing = tuple(sorted(missing))
        super().__init__(
            f"Task {task_id} depends on missing task(s): {', '.join(self.missing)}",
        )


class InvalidTransitionError(TaskStoreError):
    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(f"Invalid transition for {task_id}: {message}")
        self.task_id = task_id


class PersistenceError(RuntimeError):
    """Task store state could not be committed; the scheduler must stop."""
