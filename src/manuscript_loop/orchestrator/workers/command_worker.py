"""Subprocess-based worker that runs configured agent commands."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from manuscript_loop.orchestrator.models import TaskKind, TaskView
from manuscript_loop.orchestrator.workers.base import WorkerContext, WorkerOutcome
from manuscript_loop.orchestrator.workers.contracts import read_outcome
from manuscript_loop.orchestrator.workers.workdir import MaterializedTask, TaskWorkdirManager

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_INPUT_PLACEHOLDERS = ("{prompt}", "{prompt_file}", "{task_file}")


class CommandWorkerError(RuntimeError):
    """Agent command could not be rendered or started."""


@dataclass(slots=True)
class CommandRunResult:
    """Execution metadata of one agent command."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path


_OUTCOME_SCHEMA_EXAMPLE = """\
{
  "success": true,
  "summary": "<one line about what changed>",
  "failure_reason": null,
  "new_tasks": [
    {"title": "<follow-up task>", "chapter": "ch03", "priority": "normal", "depends_on": []}
  ],
  "findings": [
    {"file": "chapters/ch03.md", "line": 42, "severity": "high", "description": "<issue>"}
  ]
}"""


class CommandWorker:
    """Execute each task through a shell-style command template.

    Content tasks use ``content_command``; review tasks use ``review_command``
    when configured. Templates may reference ``{prompt}``, ``{prompt_file}``,
    ``{task_file}``, ``{outcome_file}``, and ``{agent}``.
    """

    def __init__(
        self,
        *,
        workdir_root: Path,
        content_command: str,
        review_command: str | None = None,
        timeout_seconds: int = 1800,
        graceful_shutdown_seconds: int = 30,
    ) -> None:
        self.workdirs = TaskWorkdirManager(workdir_root)
        self.content_command = content_command
        self.review_command = review_command
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def execute(self, task: TaskView, context: WorkerContext) -> WorkerOutcome:
        agent = str(task.payload.get("agent", "")) if task.kind is TaskKind.REVIEW else ""
        template = self.content_command
        if task.kind is TaskKind.REVIEW and self.review_command:
            template = self.review_command

        materialized = self.workdirs.materialize(
            task=task,
            iteration=context.iteration,
            prompt=build_prompt(task),
        )
        run_args = build_run_args(
            command_template=template,
            materialized=materialized,
            agent=agent,
        )

        env = os.environ.copy()
        env["MANUSCRIPT_LOOP_TASK_ID"] = task.task_id
        env["MANUSCRIPT_LOOP_TASK_KIND"] = task.kind.value
        env["MANUSCRIPT_LOOP_ITERATION"] = str(context.iteration)
        if agent:
            env["MANUSCRIPT_LOOP_REVIEW_AGENT"] = agent

        try:
            with (
                materialized.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                materialized.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                result = run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=materialized.workdir,
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=context.shutdown_requested,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                    stdout_path=materialized.stdout_path,
                    stderr_path=materialized.stderr_path,
                )
        except FileNotFoundError as error:
            raise CommandWorkerError(f"Agent command not found: {run_args[0]}") from error
        except OSError as error:
            raise CommandWorkerError(f"Agent command failed to start: {error}") from error

        return self._to_outcome(task=task, result=result, materialized=materialized, agent=agent)

    def _to_outcome(
        self,
        *,
        task: TaskView,
        result: CommandRunResult,
        materialized: MaterializedTask,
        agent: str,
    ) -> WorkerOutcome:
        if result.timed_out:
            return WorkerOutcome.failed(f"Agent timed out after {self.timeout_seconds}s")
        if result.exit_code != 0:
            stderr_tail = read_tail(result.stderr_path)
            reason = f"Agent exited with code {result.exit_code}"
            if stderr_tail:
                reason = f"{reason}: {stderr_tail}"
            logger.info("Task %s agent failed: %s", task.task_id, reason)
            return WorkerOutcome.failed(reason)

        if not materialized.outcome_file.exists():
            return WorkerOutcome(success=True, summary=read_tail(result.stdout_path) or None)
        try:
            outcome = read_outcome(materialized.outcome_file, agent=agent or None)
        except (ValueError, TypeError) as error:
            return WorkerOutcome.failed(f"Invalid outcome.json: {error}")
        if not outcome.success and not outcome.failure_reason:
            outcome.failure_reason = "Agent reported failure"
        return outcome


def build_prompt(task: TaskView) -> str:
    """Task prompt with the outcome contract appended."""

    header = task.title
    if task.chapter is not None:
        milestone = f" / {task.milestone.value}" if task.milestone is not None else ""
        header = f"[{task.chapter}{milestone}] {task.title}"
    body = f"{header}\n"
    if task.description:
        body += f"\n{task.description}\n"
    if task.kind is TaskKind.REVIEW:
        body += f"\nReview agent: {task.payload.get('agent', 'unknown')}\n"
    return (
        f"{body}"
        f"\n"
        f"The task document (task.json) in the working directory names the outcome file.\n"
        f"Write the outcome as JSON following this schema:\n"
        f"{_OUTCOME_SCHEMA_EXAMPLE}\n"
        f"Omit the file to report plain success. A non-zero exit code is a failure.\n"
    )


def build_run_args(
    *,
    command_template: str,
    materialized: MaterializedTask,
    agent: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise CommandWorkerError("Agent command template is empty.")
    if not any(placeholder in stripped for placeholder in _INPUT_PLACEHOLDERS):
        raise CommandWorkerError(
            "Agent command template must include {prompt}, {prompt_file} or {task_file}.",
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(materialized.prompt),
            prompt_file=shlex.quote(str(materialized.prompt_file)),
            task_file=shlex.quote(str(materialized.task_file)),
            outcome_file=shlex.quote(str(materialized.outcome_file)),
            agent=shlex.quote(agent),
        )
    except (KeyError, IndexError) as error:
        raise CommandWorkerError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise CommandWorkerError("Agent command template rendered empty command.")
    return argv


def read_tail(path: Path, *, limit: int = 400) -> str:
    if not path.exists():
        return ""
    text = path.read_text("utf-8", errors="replace").strip()
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


def run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: int,
    stdout_path: Path,
    stderr_path: Path,
) -> CommandRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None

    while True:
        returncode = process.poll()
        if returncode is not None:
            return CommandRunResult(
                exit_code=returncode,
                timed_out=False,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return CommandRunResult(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + max(0, graceful_shutdown_seconds)
            if now >= shutdown_deadline:
                _terminate_process(process)
                return CommandRunResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
