"""Controllers for manuscript loop CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from manuscript_loop.config import Settings
from manuscript_loop.orchestrator.errors import NotFoundError
from manuscript_loop.orchestrator.models import (
    Milestone,
    Priority,
    TaskCreate,
    TaskKind,
    TaskStatus,
)
from manuscript_loop.orchestrator.progress import render_progress_lines
from manuscript_loop.orchestrator.repository import TaskStore
from manuscript_loop.orchestrator.scheduler import IterationReport, Scheduler
from manuscript_loop.orchestrator.services import LoopService
from manuscript_loop.orchestrator.validation import render_validation_lines
from manuscript_loop.orchestrator.workers import (
    CommandWorker,
    HealthCheck,
    HealthCheckResult,
    TaskWorker,
)


@dataclass(slots=True)
class LoopStepCommand:
    """CLI input for a single scheduler iteration."""

    db_path: Path | None


@dataclass(slots=True)
class LoopRunCommand:
    """CLI input for a bounded scheduler run."""

    db_path: Path | None
    iterations: int | None
    max_hours: float | None
    max_idle_iterations: int | None


@dataclass(slots=True)
class LoopDumpCommand:
    db_path: Path | None
    output_path: Path | None


@dataclass(slots=True)
class LoopImportCommand:
    db_path: Path | None
    input_path: Path


@dataclass(slots=True)
class LoopSeedCommand:
    """CLI input for chapter seeding from a count or a features map."""

    db_path: Path | None
    chapters: int | None
    features_path: Path | None


@dataclass(slots=True)
class LoopNextCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class LoopDbCommand:
    """CLI input for read-only loop reports and breaker reset."""

    db_path: Path | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    chapter: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for single-task operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for manual task creation."""

    db_path: Path | None
    title: str
    task_id: str | None
    kind: str
    chapter: str | None
    milestone: str | None
    description: str
    priority: str
    depends_on: tuple[str, ...]


class LoopCliController:
    """Coordinates scheduler, queue, and inspection CLI operations."""

    def __init__(self, *, worker: TaskWorker | None = None) -> None:
        self.worker = worker

    def step(self, command: LoopStepCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            scheduler = self._scheduler(settings, store)
            reconciled = scheduler.start()
            report = scheduler.run_iteration()
        return [*_reconciled_lines(reconciled), *_report_lines(report)]

    def run(self, command: LoopRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        iterations = command.iterations or settings.loop.max_iterations
        max_idle = command.max_idle_iterations or settings.loop.max_idle_iterations
        max_seconds = command.max_hours * 3600 if command.max_hours is not None else None
        with _repository(settings) as store:
            scheduler = self._scheduler(settings, store)
            reconciled = scheduler.start()
            summary = scheduler.run_loop(
                max_iterations=iterations,
                max_idle_iterations=max_idle,
                max_seconds=max_seconds,
            )
            state = store.load_loop_state()

        return [
            *_reconciled_lines(reconciled),
            "Loop summary: "
            f"iterations={summary.iterations} dispatched={summary.dispatched} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"review_sweeps={summary.review_sweeps} idle={summary.idle_iterations} "
            f"created={summary.created}",
            f"Stopped: {summary.stop_reason.value if summary.stop_reason else 'unknown'}",
            f"Iteration count: {state.iteration_count}",
            *(_health_line(result) for result in summary.health_checks),
        ]

    def dump(self, command: LoopDumpCommand) -> list[str]:
        settings = _settings(command.db_path)
        output_path = command.output_path or settings.loop.snapshot_path or Path("tasks.json")
        with _repository(settings) as store:
            count = _service(settings, store).dump(output_path)
        return [f"Snapshot written: {output_path} ({count} tasks)"]

    def import_tasks(self, command: LoopImportCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            count = _service(settings, store).import_snapshot(command.input_path)
        return [f"Imported {count} tasks from {command.input_path}"]

    def seed(self, command: LoopSeedCommand) -> list[str]:
        if (command.chapters is None) == (command.features_path is None):
            raise ValueError("Pass exactly one of --chapters or --features.")
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            service = _service(settings, store)
            if command.features_path is not None:
                features = json.loads(command.features_path.read_text("utf-8"))
                if not isinstance(features, dict):
                    raise ValueError(f"Expected JSON object in {command.features_path}")
                result = service.seed_features(features)
            else:
                result = service.seed_chapters(command.chapters or 0)

        lines = [f"Seeded {len(result.created)} tasks, skipped {len(result.skipped)} chapters"]
        lines.extend(f"  created {task_id}" for task_id in result.created)
        if result.skipped:
            lines.append(f"  skipped: {', '.join(result.skipped)}")
        return lines

    def next(self, command: LoopNextCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            candidates = _service(settings, store).next_candidates(limit=command.limit)
        if not candidates:
            return ["No eligible tasks."]
        lines = [f"Next {len(candidates)} eligible task(s):"]
        for candidate in candidates:
            parts = " ".join(
                f"{name}={value}"
                for name, value in candidate.breakdown.as_dict().items()
                if value and name != "total"
            )
            lines.append(
                f"  {candidate.breakdown.total:>8} {candidate.task_id} {candidate.title} "
                f"[{parts or 'no bonuses'}]",
            )
        return lines

    def progress(self, command: LoopDbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            summary = _service(settings, store).progress()
        return render_progress_lines(summary)

    def validate(self, command: LoopDbCommand) -> tuple[list[str], bool]:
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            report = _service(settings, store).validate()
        return render_validation_lines(report), report.ok

    def breaker(self, command: LoopDbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            breaker = _service(settings, store).breaker()
        return [breaker.status_line(), f"Threshold: {breaker.threshold}"]

    def breaker_reset(self, command: LoopDbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            state = _service(settings, store).reset_breaker()
        return [
            "Circuit breaker reset: "
            f"consecutive_failures={state.consecutive_failures} trips={state.breaker_trips}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = TaskStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as store:
            tasks = store.list_tasks(status=status, chapter=command.chapter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            depends = ",".join(task.depends_on) or "-"
            lines.append(
                f"  {task.task_id} kind={task.kind.value} status={task.status.value} "
                f"priority={task.priority.value} score={task.score} depends_on={depends}",
            )
        return lines

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            details = store.get_task_details(command.task_id)
        if details is None:
            raise NotFoundError(command.task_id)

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Kind: {task.kind.value}",
            f"Chapter: {task.chapter or '-'}",
            f"Milestone: {task.milestone.value if task.milestone else '-'}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Score: {task.score}",
            f"Depends on: {', '.join(task.depends_on) or '-'}",
            f"Review flagged: {'yes' if task.review_flagged else 'no'}",
            f"Source task: {task.source_task_id or '-'}",
            f"Failure: {task.failure_reason or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        payload = TaskCreate(
            title=command.title,
            task_id=command.task_id,
            kind=TaskKind(command.kind.lower()),
            chapter=command.chapter,
            milestone=Milestone(command.milestone.lower()) if command.milestone else None,
            description=command.description,
            priority=Priority(command.priority.lower()),
            depends_on=command.depends_on,
        )
        with _repository(settings) as store:
            task = store.create(payload)
        return [f"Task created: task_id={task.task_id} status={task.status.value}"]

    def requeue_task(self, command: TaskIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            task = store.requeue(command.task_id)
        return [f"Task re-queued: task_id={task.task_id} status={task.status.value}"]

    def delete_task(self, command: TaskIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as store:
            store.delete(command.task_id)
        return [f"Task deleted: task_id={command.task_id}"]

    def _scheduler(self, settings: Settings, store: TaskStore) -> Scheduler:
        worker = self.worker or CommandWorker(
            workdir_root=settings.worker.workdir_root,
            content_command=settings.worker.content_command,
            review_command=settings.worker.review_command,
            timeout_seconds=settings.worker.timeout_seconds,
            graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
        )
        health_check = None
        if settings.worker.health_command:
            health_check = HealthCheck(
                command=settings.worker.health_command,
                log_dir=settings.worker.workdir_root / "_health",
                timeout_seconds=settings.worker.health_timeout_seconds,
            )
        return Scheduler(
            store=store,
            worker=worker,
            breaker_threshold=settings.loop.breaker_threshold,
            review_period=settings.loop.review_period,
            review_agents=settings.loop.review_agents,
            snapshot_path=settings.loop.snapshot_path,
            sleep_seconds=settings.loop.sleep_seconds,
            health_check=health_check,
        )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _service(settings: Settings, store: TaskStore) -> LoopService:
    return LoopService(
        store=store,
        breaker_threshold=settings.loop.breaker_threshold,
        review_period=settings.loop.review_period,
    )


def _reconciled_lines(reconciled: list[str]) -> list[str]:
    if not reconciled:
        return []
    return [f"Reconciled interrupted task(s) back to pending: {', '.join(reconciled)}"]


def _report_lines(report: IterationReport) -> list[str]:
    if report.idle:
        lines = [f"Iteration {report.iteration}: idle ({report.idle_reason})"]
    else:
        lines = [
            f"Iteration {report.iteration}: {report.kind.value} "
            f"dispatched={len(report.dispatched)} succeeded={len(report.succeeded)} "
            f"failed={len(report.failed)} created={len(report.created)}",
        ]
    lines.extend(f"  ok     {task_id}" for task_id in report.succeeded)
    lines.extend(f"  failed {task_id}" for task_id in report.failed)
    lines.extend(f"  new    {task_id}" for task_id in report.created)
    lines.extend(f"  rejected {task_id}: {reason}" for task_id, reason in report.rejected)
    if report.dangling:
        lines.append(f"  dangling dependencies: {', '.join(report.dangling)}")
    if report.breaker_opened:
        lines.append("  circuit breaker opened")
    if report.health is not None:
        lines.append(_health_line(report.health))
    return lines


def _health_line(result: HealthCheckResult) -> str:
    line = f"  health check ({result.reason}): {'ok' if result.ok else 'failed'}"
    if not result.ok and result.summary:
        line = f"{line}: {result.summary}"
    return line


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
