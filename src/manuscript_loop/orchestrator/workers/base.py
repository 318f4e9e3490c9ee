"""Worker interface for scheduler task execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from manuscript_loop.orchestrator.models import Finding, TaskCreate, TaskView


@dataclass(slots=True)
class WorkerContext:
    """Per-dispatch context handed to a worker."""

    iteration: int
    shutdown_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class WorkerOutcome:
    """Result of executing one task."""

    success: bool
    new_tasks: list[TaskCreate] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    summary: str | None = None
    failure_reason: str | None = None

    @classmethod
    def failed(cls, reason: str) -> WorkerOutcome:
        return cls(success=False, failure_reason=reason)


class TaskWorker(Protocol):
    """Protocol implemented by task workers."""

    def execute(self, task: TaskView, context: WorkerContext) -> WorkerOutcome:
        """Run one task and report its outcome."""
