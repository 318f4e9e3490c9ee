"""Workdir materialization helpers for file-based task execution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from manuscript_loop.orchestrator.models import TaskView
from manuscript_loop.orchestrator.workers.contracts import (
    CONTRACT_VERSION,
    TaskDocument,
    task_to_contract,
    write_task_document,
)


@dataclass(slots=True)
class MaterializedTask:
    """Paths of one materialized task workdir."""

    workdir: Path
    task_file: Path
    prompt_file: Path
    outcome_file: Path
    stdout_path: Path
    stderr_path: Path
    prompt: str


class TaskWorkdirManager:
    """Creates deterministic per-task directory layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir.resolve()

    def materialize(self, *, task: TaskView, iteration: int, prompt: str) -> MaterializedTask:
        base_dir = (self.root_dir / task.task_id).resolve()
        if base_dir.parent != self.root_dir:
            raise ValueError(
                f"Task id {task.task_id!r} does not name a directory under {self.root_dir}",
            )
        base_dir.mkdir(parents=True, exist_ok=True)

        task_file = base_dir / "task.json"
        prompt_file = base_dir / "prompt.txt"
        outcome_file = base_dir / "outcome.json"
        # A stale outcome from an earlier attempt must not be read as this one's.
        outcome_file.unlink(missing_ok=True)

        write_task_document(
            task_file,
            TaskDocument(
                contract_version=CONTRACT_VERSION,
                iteration=iteration,
                task=task_to_contract(task),
                prompt=prompt,
                outcome_file=str(outcome_file),
            ),
        )
        prompt_file.write_text(prompt, "utf-8")

        return MaterializedTask(
            workdir=base_dir,
            task_file=task_file,
            prompt_file=prompt_file,
            outcome_file=outcome_file,
            stdout_path=base_dir / "stdout.log",
            stderr_path=base_dir / "stderr.log",
            prompt=prompt,
        )
