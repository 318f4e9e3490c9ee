"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from manuscript_loop.orchestrator.models import (
    Milestone,
    Priority,
    TaskKind,
    TaskStatus,
    TaskView,
)
from manuscript_loop.orchestrator.repository import TaskStore
from manuscript_loop.orchestrator.workers.base import WorkerContext, WorkerOutcome

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_COMMAND = (
    f"{shlex.quote(sys.executable)} -m manuscript_loop.orchestrator.workers.echo_agent "
    "--task-file {task_file}"
)
START = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock shared by store and scheduler."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedWorker:
    """Worker returning queued outcomes per task id, success by default."""

    def __init__(
        self,
        outcomes: dict[str, list[WorkerOutcome]] | None = None,
        *,
        default: Callable[[TaskView], WorkerOutcome] | None = None,
    ) -> None:
        self.outcomes = outcomes or {}
        self.default = default or (lambda task: WorkerOutcome(success=True))
        self.calls: list[str] = []
        self.iterations: list[int] = []

    def execute(self, task: TaskView, context: WorkerContext) -> WorkerOutcome:
        self.calls.append(task.task_id)
        self.iterations.append(context.iteration)
        queued = self.outcomes.get(task.task_id)
        if queued:
            return queued.pop(0)
        return self.default(task)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock) -> Iterator[TaskStore]:
    task_store = TaskStore(tmp_path / "tasks.db", clock=clock)
    task_store.init_schema()
    yield task_store
    task_store.close()


@pytest.fixture()
def echo_agent_env(monkeypatch) -> str:
    """Make the package importable for agent subprocesses; return the echo command."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(SRC_DIR), existing]) if existing else str(SRC_DIR),
    )
    return ECHO_AGENT_COMMAND


def make_task(  # noqa: PLR0913
    task_id: str,
    *,
    status: TaskStatus = TaskStatus.PENDING,
    depends_on: tuple[str, ...] = (),
    kind: TaskKind = TaskKind.GENERIC,
    chapter: str | None = None,
    milestone: Milestone | None = None,
    priority: Priority = Priority.NORMAL,
    review_flagged: bool = False,
    created_at: datetime = START,
) -> TaskView:
    """Build an in-memory task view for pure resolver and scoring tests."""

    return TaskView(
        task_id=task_id,
        kind=kind,
        chapter=chapter,
        milestone=milestone,
        title=task_id,
        description="",
        priority=priority,
        score=0,
        status=status,
        depends_on=depends_on,
        review_flagged=review_flagged,
        source_task_id=None,
        failure_reason=None,
        payload={},
        created_at=created_at,
        updated_at=created_at,
    )
