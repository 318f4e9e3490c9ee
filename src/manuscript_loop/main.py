"""CLI entrypoint for manuscript-loop."""

import logging
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any, TypeVar

import rich_click as click

from manuscript_loop import __version__
from manuscript_loop.orchestrator.controllers import (
    LoopCliController,
    LoopDbCommand,
    LoopDumpCommand,
    LoopImportCommand,
    LoopNextCommand,
    LoopRunCommand,
    LoopSeedCommand,
    LoopStepCommand,
    TaskAddCommand,
    TaskIdCommand,
    TaskListCommand,
)
from manuscript_loop.orchestrator.errors import PersistenceError, TaskStoreError
from manuscript_loop.orchestrator.models import Milestone, Priority, TaskKind, TaskStatus

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()

F = TypeVar("F", bound=Callable[..., Any])


def _cli_errors(func: F) -> F:
    """Report domain and configuration errors as CLI errors instead of tracebacks."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (TaskStoreError, PersistenceError, ValueError, OSError) as error:
            raise click.ClickException(str(error)) from error

    return wrapper  # type: ignore[return-value]


@click.group()
@click.version_option(version=__version__, prog_name="manuscript-loop")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for scheduler and worker diagnostics.",
)
def manuscript_loop(log_level: str) -> None:
    """Manuscript task orchestration CLI."""

    logging.basicConfig(level=log_level.upper(), format="%(levelname)s: %(message)s")


@manuscript_loop.group()
def loop() -> None:
    """Scheduler loop commands."""


@manuscript_loop.group()
def tasks() -> None:
    """Task queue inspection and manual operations."""


@loop.command("step")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_cli_errors
def loop_step(db_path: Path | None) -> None:
    """Run exactly one scheduler iteration."""

    _emit_lines(LOOP_CONTROLLER.step(LoopStepCommand(db_path=db_path)))


@loop.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many iterations. Defaults to MANUSCRIPT_LOOP_MAX_ITERATIONS.",
)
@click.option(
    "--max-hours",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Wall-clock budget for the run, in hours.",
)
@click.option(
    "--max-idle-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive idle iterations.",
)
@_cli_errors
def loop_run(
    db_path: Path | None,
    iterations: int | None,
    max_hours: float | None,
    max_idle_iterations: int | None,
) -> None:
    """Run scheduler iterations until done, idle, out of budget, or interrupted."""

    _emit_lines(
        LOOP_CONTROLLER.run(
            LoopRunCommand(
                db_path=db_path,
                iterations=iterations,
                max_hours=max_hours,
                max_idle_iterations=max_idle_iterations,
            ),
        ),
    )


@loop.command("dump")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Snapshot path. Defaults to MANUSCRIPT_LOOP_SNAPSHOT_PATH or tasks.json.",
)
@_cli_errors
def loop_dump(db_path: Path | None, output_path: Path | None) -> None:
    """Write the task list snapshot document."""

    _emit_lines(LOOP_CONTROLLER.dump(LoopDumpCommand(db_path=db_path, output_path=output_path)))


@loop.command("import")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("input_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@_cli_errors
def loop_import(db_path: Path | None, input_path: Path) -> None:
    """Replace the task store with the contents of a snapshot document."""

    _emit_lines(
        LOOP_CONTROLLER.import_tasks(LoopImportCommand(db_path=db_path, input_path=input_path)),
    )


@loop.command("seed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--chapters",
    type=click.IntRange(min=1, max=99),
    default=None,
    help="Seed a draft task for chapters ch01..chNN.",
)
@click.option(
    "--features",
    "features_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Seed from a features.json chapter milestone map.",
)
@_cli_errors
def loop_seed(db_path: Path | None, chapters: int | None, features_path: Path | None) -> None:
    """Seed chapter milestone tasks."""

    _emit_lines(
        LOOP_CONTROLLER.seed(
            LoopSeedCommand(db_path=db_path, chapters=chapters, features_path=features_path),
        ),
    )


@loop.command("next")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=5,
    show_default=True,
    help="How many candidates to show.",
)
@_cli_errors
def loop_next(db_path: Path | None, limit: int) -> None:
    """Show the ranked eligible tasks without dispatching."""

    _emit_lines(LOOP_CONTROLLER.next(LoopNextCommand(db_path=db_path, limit=limit)))


@loop.command("progress")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_cli_errors
def loop_progress(db_path: Path | None) -> None:
    """Show per-chapter milestone progress and loop counters."""

    _emit_lines(LOOP_CONTROLLER.progress(LoopDbCommand(db_path=db_path)))


@loop.command("validate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_cli_errors
def loop_validate(db_path: Path | None) -> None:
    """Check the dependency graph and milestone order."""

    lines, ok = LOOP_CONTROLLER.validate(LoopDbCommand(db_path=db_path))
    _emit_lines(lines)
    if not ok:
        raise click.ClickException("Task graph validation failed.")


@loop.command("breaker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_cli_errors
def loop_breaker(db_path: Path | None) -> None:
    """Show circuit breaker state."""

    _emit_lines(LOOP_CONTROLLER.breaker(LoopDbCommand(db_path=db_path)))


@loop.command("breaker-reset")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_cli_errors
def loop_breaker_reset(db_path: Path | None) -> None:
    """Close the circuit breaker after fixing the failing work."""

    _emit_lines(LOOP_CONTROLLER.breaker_reset(LoopDbCommand(db_path=db_path)))


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--chapter", default=None, help="Optional chapter filter, for example ch03.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
@_cli_errors
def tasks_list(db_path: Path | None, status: str | None, chapter: str | None, limit: int) -> None:
    """List tasks in creation order."""

    _emit_lines(
        LOOP_CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, status=status, chapter=chapter, limit=limit),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
@_cli_errors
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with its event history."""

    _emit_lines(LOOP_CONTROLLER.inspect_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--title", required=True, help="Task title.")
@click.option("--id", "task_id", default=None, help="Task id. Generated when omitted.")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in TaskKind], case_sensitive=False),
    default=TaskKind.GENERIC.value,
    show_default=True,
)
@click.option("--chapter", default=None, help="Chapter key, for example ch03.")
@click.option(
    "--milestone",
    type=click.Choice([milestone.value for milestone in Milestone], case_sensitive=False),
    default=None,
    help="Milestone for milestone tasks.",
)
@click.option("--description", default="", help="Task description.")
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in Priority], case_sensitive=False),
    default=Priority.NORMAL.value,
    show_default=True,
)
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Dependency task id. Can be repeated.",
)
@_cli_errors
def tasks_add(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    task_id: str | None,
    kind: str,
    chapter: str | None,
    milestone: str | None,
    description: str,
    priority: str,
    depends_on: tuple[str, ...],
) -> None:
    """Add a task to the queue."""

    _emit_lines(
        LOOP_CONTROLLER.add_task(
            TaskAddCommand(
                db_path=db_path,
                title=title,
                task_id=task_id,
                kind=kind,
                chapter=chapter,
                milestone=milestone,
                description=description,
                priority=priority,
                depends_on=depends_on,
            ),
        ),
    )


@tasks.command("requeue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
@_cli_errors
def tasks_requeue(db_path: Path | None, task_id: str) -> None:
    """Move a failed task back to pending."""

    _emit_lines(LOOP_CONTROLLER.requeue_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
@_cli_errors
def tasks_delete(db_path: Path | None, task_id: str) -> None:
    """Delete a task that is not in progress."""

    _emit_lines(LOOP_CONTROLLER.delete_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    manuscript_loop()
