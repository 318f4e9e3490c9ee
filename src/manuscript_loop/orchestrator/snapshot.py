"""Export and import of the ``tasks.json`` document."""

from __future__ import annotations

import json
import os
from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from manuscript_loop.orchestrator.errors import PersistenceError
from manuscript_loop.orchestrator.models import (
    LoopState,
    Milestone,
    Priority,
    TaskKind,
    TaskStatus,
    TaskView,
)
from manuscript_loop.storage.common import from_iso

SNAPSHOT_VERSION = 1


class SnapshotFormatError(ValueError):
    """The document is not a valid ``tasks.json`` snapshot."""


def build_snapshot(
    tasks: Sequence[TaskView],
    loop_state: LoopState,
    *,
    now: datetime,
) -> dict[str, Any]:
    """Build the persisted document: ``{version, lastUpdated, tasks, stats, checkpoints}``."""

    ordered = sorted(tasks, key=lambda task: (task.created_at, task.task_id))
    by_status = Counter(task.status.value for task in ordered)
    total = len(ordered)
    complete = by_status.get(TaskStatus.COMPLETE.value, 0)
    return {
        "version": SNAPSHOT_VERSION,
        "lastUpdated": now.isoformat(),
        "tasks": [task_to_document(task) for task in ordered],
        "stats": {
            "total": total,
            "byStatus": {status.value: by_status.get(status.value, 0) for status in TaskStatus},
            "completionPercent": round(complete * 100 / total, 1) if total else 0.0,
        },
        "checkpoints": {
            "iterationCount": loop_state.iteration_count,
            "consecutiveFailures": loop_state.consecutive_failures,
            "breakerOpen": loop_state.breaker_open,
            "breakerTrips": loop_state.breaker_trips,
            "failedAttempts": loop_state.failed_attempts,
            "lastSuccessfulTaskId": loop_state.last_successful_task_id,
            "lastCheckpointAt": (
                loop_state.last_checkpoint_at.isoformat()
                if loop_state.last_checkpoint_at is not None
                else None
            ),
        },
    }


def task_to_document(task: TaskView) -> dict[str, Any]:
    return {
        "id": task.task_id,
        "chapter": task.chapter,
        "milestone": task.milestone.value if task.milestone is not None else None,
        "kind": task.kind.value,
        "title": task.title,
        "description": task.description,
        "priority": task.priority.value,
        "dependsOn": list(task.depends_on),
        "score": task.score,
        "status": task.status.value,
        "reviewFlagged": task.review_flagged,
        "sourceTaskId": task.source_task_id,
        "failureReason": task.failure_reason,
        "payload": task.payload,
        "createdAt": task.created_at.isoformat(),
        "updatedAt": task.updated_at.isoformat(),
    }


def write_snapshot(path: Path, document: Mapping[str, Any]) -> None:
    """Write atomically so readers never see a half-written document."""

    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(
            json.dumps(dict(document), ensure_ascii=False, indent=2) + "\n",
            "utf-8",
        )
        os.replace(tmp_path, path)
    except OSError as error:
        raise PersistenceError(f"Cannot write snapshot {path}: {error}") from error


def read_snapshot(path: Path) -> tuple[list[TaskView], LoopState | None]:
    try:
        raw = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise SnapshotFormatError(f"{path} is not valid JSON: {error}") from error
    return parse_snapshot(raw)


def parse_snapshot(raw: Any) -> tuple[list[TaskView], LoopState | None]:
    """Validate a snapshot document and return its tasks and checkpoints."""

    if not isinstance(raw, dict):
        raise SnapshotFormatError("Snapshot must be a JSON object")
    version = raw.get("version", SNAPSHOT_VERSION)
    if version != SNAPSHOT_VERSION:
        raise SnapshotFormatError(f"Unsupported snapshot version: {version}")
    raw_tasks = raw.get("tasks")
    if not isinstance(raw_tasks, list):
        raise SnapshotFormatError("Snapshot tasks must be an array")

    tasks = [_parse_task(item, index=index) for index, item in enumerate(raw_tasks)]
    checkpoints = raw.get("checkpoints")
    if checkpoints is None:
        return tasks, None
    if not isinstance(checkpoints, dict):
        raise SnapshotFormatError("Snapshot checkpoints must be an object")
    return tasks, _parse_checkpoints(checkpoints)


def _parse_task(item: Any, *, index: int) -> TaskView:
    if not isinstance(item, dict):
        raise SnapshotFormatError(f"tasks[{index}] must be an object")
    try:
        task_id = item["id"]
        title = item["title"]
        if not isinstance(task_id, str) or not task_id.strip():
            raise SnapshotFormatError(f"tasks[{index}].id must be a non-empty string")
        if not isinstance(title, str):
            raise SnapshotFormatError(f"tasks[{index}].title must be a string")
        depends_on = item.get("dependsOn", [])
        if not isinstance(depends_on, list) or not all(
            isinstance(value, str) for value in depends_on
        ):
            raise SnapshotFormatError(f"tasks[{index}].dependsOn must be an array of strings")
        payload = item.get("payload") or {}
        if not isinstance(payload, dict):
            raise SnapshotFormatError(f"tasks[{index}].payload must be an object")
        milestone = item.get("milestone")
        kind_default = TaskKind.MILESTONE.value if milestone else TaskKind.GENERIC.value
        created_at = from_iso(item["createdAt"])
        return TaskView(
            task_id=task_id,
            kind=TaskKind(item.get("kind") or kind_default),
            chapter=item.get("chapter"),
            milestone=Milestone(milestone) if milestone else None,
            title=title,
            description=str(item.get("description") or ""),
            priority=Priority(item.get("priority") or Priority.NORMAL.value),
            score=int(item.get("score") or 0),
            status=TaskStatus(item.get("status") or TaskStatus.PENDING.value),
            depends_on=tuple(sorted(set(depends_on))),
            review_flagged=bool(item.get("reviewFlagged", False)),
            source_task_id=item.get("sourceTaskId"),
            failure_reason=item.get("failureReason"),
            payload=payload,
            created_at=created_at,
            updated_at=from_iso(item["updatedAt"]) if item.get("updatedAt") else created_at,
        )
    except KeyError as error:
        raise SnapshotFormatError(f"tasks[{index}] is missing field {error}") from error
    except (TypeError, ValueError) as error:
        if isinstance(error, SnapshotFormatError):
            raise
        raise SnapshotFormatError(f"tasks[{index}] is invalid: {error}") from error


def _parse_checkpoints(raw: Mapping[str, Any]) -> LoopState:
    try:
        last_checkpoint = raw.get("lastCheckpointAt")
        return LoopState(
            iteration_count=int(raw.get("iterationCount", 0)),
            consecutive_failures=int(raw.get("consecutiveFailures", 0)),
            breaker_open=bool(raw.get("breakerOpen", False)),
            breaker_trips=int(raw.get("breakerTrips", 0)),
            failed_attempts=int(raw.get("failedAttempts", 0)),
            last_successful_task_id=raw.get("lastSuccessfulTaskId"),
            last_checkpoint_at=from_iso(last_checkpoint) if last_checkpoint else None,
        )
    except (TypeError, ValueError) as error:
        raise SnapshotFormatError(f"Snapshot checkpoints are invalid: {error}") from error
