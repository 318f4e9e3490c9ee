"""Review sweep task construction and finding remediation."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any

from manuscript_loop.orchestrator.models import (
    Finding,
    Priority,
    Severity,
    TaskCreate,
    TaskKind,
    TaskView,
)

DEFAULT_REVIEW_AGENTS: tuple[str, ...] = (
    "slop-checker",
    "diagram-reviewer",
    "tech-accuracy",
    "term-intro-checker",
    "oreilly-style",
    "cross-ref-validator",
    "progress-summarizer",
)

_CHAPTER_IN_PATH = re.compile(r"ch(\d+)", re.IGNORECASE)
_MAX_TITLE_LENGTH = 120


def review_task_id(iteration: int, index: int, agent: str) -> str:
    return f"review-{iteration:04d}-{index:02d}-{agent}"


def build_review_tasks(iteration: int, agents: Sequence[str]) -> list[TaskCreate]:
    """One dependency-free review task per agent for the sweep at ``iteration``."""

    return [
        TaskCreate(
            task_id=review_task_id(iteration, index, agent),
            title=f"Review sweep {iteration}: {agent}",
            kind=TaskKind.REVIEW,
            description=f"Run the {agent} review agent against the current manuscript.",
            priority=Priority.NORMAL,
            payload={"agent": agent, "iteration": iteration},
        )
        for index, agent in enumerate(agents, start=1)
    ]


def chapter_from_path(path: str) -> str | None:
    """Infer the ``chNN`` chapter key from a manuscript file path."""

    match = _CHAPTER_IN_PATH.search(path)
    if match is None:
        return None
    return f"ch{int(match.group(1)):02d}"


def parse_finding(raw: Mapping[str, Any], *, agent: str | None = None) -> Finding:
    """Parse one finding object, raising ValueError on malformed input."""

    file_value = raw.get("file")
    if not isinstance(file_value, str) or not file_value.strip():
        raise ValueError("finding.file must be a non-empty string")
    description = raw.get("description")
    if not isinstance(description, str) or not description.strip():
        raise ValueError("finding.description must be a non-empty string")
    line_value = raw.get("line")
    if line_value is not None and (isinstance(line_value, bool) or not isinstance(line_value, int)):
        raise ValueError("finding.line must be an integer or null")
    severity_raw = str(raw.get("severity", "medium")).strip().lower()
    try:
        severity = Severity(severity_raw)
    except ValueError as error:
        raise ValueError(f"Unsupported finding severity: {severity_raw}") from error
    agent_value = raw.get("agent", agent)
    return Finding(
        file=file_value.strip(),
        line=line_value,
        severity=severity,
        description=description.strip(),
        agent=str(agent_value) if agent_value is not None else None,
    )


def remediation_tasks(review_task: TaskView, findings: Sequence[Finding]) -> list[TaskCreate]:
    """Turn review findings into flagged, dependency-free remediation tasks."""

    tasks: list[TaskCreate] = []
    for index, finding in enumerate(findings, start=1):
        location = finding.file if finding.line is None else f"{finding.file}:{finding.line}"
        title = f"Fix {finding.severity.value} finding in {location}: {finding.description}"
        if len(title) > _MAX_TITLE_LENGTH:
            title = title[: _MAX_TITLE_LENGTH - 3].rstrip() + "..."
        agent = finding.agent or review_task.payload.get("agent")
        tasks.append(
            TaskCreate(
                task_id=f"{review_task.task_id}-fix-{index:02d}",
                title=title,
                kind=TaskKind.REMEDIATION,
                chapter=chapter_from_path(finding.file),
                description=finding.description,
                priority=finding.severity.to_priority(),
                review_flagged=True,
                source_task_id=review_task.task_id,
                payload={
                    "file": finding.file,
                    "line": finding.line,
                    "severity": finding.severity.value,
                    "agent": agent,
                },
            ),
        )
    return tasks
