"""Domain models for the manuscript task queue and scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    ELIGIBLE = "eligible"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class Milestone(str, Enum):
    """One stage of a chapter's fixed completion pipeline, in pipeline order."""

    DRAFT = "draft"
    CODE_WRITTEN = "code_written"
    CODE_TESTED = "code_tested"
    REVIEWED = "reviewed"
    DIAGRAMS_COMPLETE = "diagrams_complete"
    FINAL = "final"

    @property
    def position(self) -> int:
        return MILESTONE_ORDER.index(self)

    def next(self) -> Milestone | None:
        """Following milestone, or None after ``final``."""

        position = self.position + 1
        if position >= len(MILESTONE_ORDER):
            return None
        return MILESTONE_ORDER[position]


MILESTONE_ORDER: tuple[Milestone, ...] = tuple(Milestone)


class TaskKind(str, Enum):
    """What a task is for; review tasks are diagnostic and bypass the breaker."""

    MILESTONE = "milestone"
    REVIEW = "review"
    REMEDIATION = "remediation"
    GENERIC = "generic"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    NORMAL = "normal"
    LOW = "low"


class Severity(str, Enum):
    """Review finding severity."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    def to_priority(self) -> Priority:
        return Priority(self.value)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    task_id: str | None = None
    kind: TaskKind = TaskKind.GENERIC
    chapter: str | None = None
    milestone: Milestone | None = None
    description: str = ""
    priority: Priority = Priority.NORMAL
    depends_on: tuple[str, ...] = ()
    review_flagged: bool = False
    source_task_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskPatch:
    """Partial update; ``None`` leaves a field unchanged."""

    status: TaskStatus | None = None
    milestone: Milestone | None = None
    title: str | None = None
    description: str | None = None
    priority: Priority | None = None
    score: int | None = None
    depends_on: tuple[str, ...] | None = None
    review_flagged: bool | None = None
    failure_reason: str | None = None
    payload: dict[str, Any] | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for scheduler, CLI, and snapshot export."""

    task_id: str
    kind: TaskKind
    chapter: str | None
    milestone: Milestone | None
    title: str
    description: str
    priority: Priority
    score: int
    status: TaskStatus
    depends_on: tuple[str, ...]
    review_flagged: bool
    source_task_id: str | None
    failure_reason: str | None
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @property
    def is_content(self) -> bool:
        return self.kind is not TaskKind.REVIEW


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class Finding:
    """One structured review finding returned by a review agent."""

    file: str
    line: int | None
    severity: Severity
    description: str
    agent: str | None = None


@dataclass(slots=True)
class LoopState:
    """Persisted scheduler counters and circuit-breaker checkpoint."""

    iteration_count: int = 0
    consecutive_failures: int = 0
    breaker_open: bool = False
    breaker_trips: int = 0
    failed_attempts: int = 0
    last_successful_task_id: str | None = None
    last_checkpoint_at: datetime | None = None


@dataclass(slots=True)
class OutcomeCommit:
    """Result of committing one dispatch outcome."""

    task: TaskView
    created: list[TaskView] = field(default_factory=list)
    rejected: list[tuple[str, str]] = field(default_factory=list)
