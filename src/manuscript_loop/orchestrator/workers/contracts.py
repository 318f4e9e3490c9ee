"""File-based contracts between the scheduler and agent commands."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from manuscript_loop.orchestrator.models import (
    Milestone,
    Priority,
    TaskCreate,
    TaskKind,
    TaskView,
)
from manuscript_loop.orchestrator.review import parse_finding
from manuscript_loop.orchestrator.workers.base import WorkerOutcome

CONTRACT_VERSION = 1


@dataclass(slots=True)
class TaskDocument:
    """Contents of ``task.json`` written into each task workdir."""

    contract_version: int
    iteration: int
    task: dict[str, Any]
    prompt: str
    outcome_file: str


def write_json(path: Path, payload: Mapping[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(dict(payload), ensure_ascii=False, indent=2, sort_keys=True),
        "utf-8",
    )


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def task_to_contract(task: TaskView) -> dict[str, Any]:
    return {
        "id": task.task_id,
        "kind": task.kind.value,
        "chapter": task.chapter,
        "milestone": task.milestone.value if task.milestone is not None else None,
        "title": task.title,
        "description": task.description,
        "priority": task.priority.value,
        "depends_on": list(task.depends_on),
        "review_flagged": task.review_flagged,
        "source_task_id": task.source_task_id,
        "payload": task.payload,
    }


def write_task_document(path: Path, document: TaskDocument) -> None:
    write_json(
        path,
        {
            "contract_version": document.contract_version,
            "iteration": document.iteration,
            "task": document.task,
            "prompt": document.prompt,
            "outcome_file": document.outcome_file,
        },
    )


def read_task_document(path: Path) -> TaskDocument:
    """Load and validate ``task.json``."""

    raw = load_json(path)
    missing = [key for key in ("task", "outcome_file") if key not in raw]
    if missing:
        raise ValueError(f"Task document missing required fields: {', '.join(missing)}")
    task = raw["task"]
    if not isinstance(task, dict) or not isinstance(task.get("id"), str):
        raise TypeError("task.json task must be an object with a string id")
    outcome_file = raw["outcome_file"]
    if not isinstance(outcome_file, str) or not outcome_file:
        raise ValueError("task.json outcome_file must be a non-empty string")
    iteration = raw.get("iteration", 0)
    if not isinstance(iteration, int):
        raise TypeError("task.json iteration must be an integer")
    return TaskDocument(
        contract_version=int(raw.get("contract_version", CONTRACT_VERSION)),
        iteration=iteration,
        task=task,
        prompt=str(raw.get("prompt", "")),
        outcome_file=outcome_file,
    )


def parse_new_task(raw: Mapping[str, Any]) -> TaskCreate:
    """Parse one discovered task declared by an agent."""

    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValueError("new_tasks[].title must be a non-empty string")
    task_id = raw.get("id")
    if task_id is not None and (not isinstance(task_id, str) or not task_id.strip()):
        raise ValueError("new_tasks[].id must be a non-empty string when provided")
    depends_on = raw.get("depends_on", [])
    if not isinstance(depends_on, list) or not all(isinstance(item, str) for item in depends_on):
        raise TypeError("new_tasks[].depends_on must be an array of strings")
    payload = raw.get("payload", {})
    if not isinstance(payload, dict):
        raise TypeError("new_tasks[].payload must be an object")
    milestone_raw = raw.get("milestone")
    chapter = raw.get("chapter")
    if chapter is not None and not isinstance(chapter, str):
        raise TypeError("new_tasks[].chapter must be a string when provided")
    return TaskCreate(
        title=title.strip(),
        task_id=task_id,
        kind=TaskKind(raw.get("kind", TaskKind.GENERIC.value)),
        chapter=chapter,
        milestone=Milestone(milestone_raw) if milestone_raw is not None else None,
        description=str(raw.get("description", "")),
        priority=Priority(raw.get("priority", Priority.NORMAL.value)),
        depends_on=tuple(depends_on),
        review_flagged=bool(raw.get("review_flagged", False)),
        payload=payload,
    )


def read_outcome(path: Path, *, agent: str | None = None) -> WorkerOutcome:
    """Parse ``outcome.json``; any malformed content raises ValueError or TypeError."""

    raw = load_json(path)
    success = raw.get("success", True)
    if not isinstance(success, bool):
        raise TypeError("outcome.success must be a boolean")
    raw_tasks = raw.get("new_tasks", [])
    raw_findings = raw.get("findings", [])
    if not isinstance(raw_tasks, list):
        raise TypeError("outcome.new_tasks must be an array")
    if not isinstance(raw_findings, list):
        raise TypeError("outcome.findings must be an array")
    for item in [*raw_tasks, *raw_findings]:
        if not isinstance(item, dict):
            raise TypeError("outcome.new_tasks and outcome.findings entries must be objects")
    summary = raw.get("summary")
    failure_reason = raw.get("failure_reason")
    return WorkerOutcome(
        success=success,
        new_tasks=[parse_new_task(item) for item in raw_tasks],
        findings=[parse_finding(item, agent=agent) for item in raw_findings],
        summary=str(summary) if summary is not None else None,
        failure_reason=str(failure_reason) if failure_reason is not None else None,
    )
