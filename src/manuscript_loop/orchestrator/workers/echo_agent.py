"""Local deterministic agent for command worker integration tests and dry runs."""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path
from typing import Any

from manuscript_loop.orchestrator.workers.contracts import read_task_document, write_json


def _parse_finding(value: str) -> dict[str, Any]:
    """Parse ``file:line:severity:description``; line may be empty."""

    parts = value.split(":", 3)
    if len(parts) != 4:
        raise argparse.ArgumentTypeError(
            f"finding must look like file:line:severity:description, got {value!r}",
        )
    file_value, line_value, severity, description = parts
    return {
        "file": file_value,
        "line": int(line_value) if line_value.strip() else None,
        "severity": severity,
        "description": description,
    }


def main(argv: list[str] | None = None) -> int:
    """Echo the task back as a successful (or failed) outcome."""

    parser = argparse.ArgumentParser()
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--task-file")
    mode.add_argument("--health", action="store_true", help="act as a project health check")
    parser.add_argument("--fail", action="store_true")
    parser.add_argument("--finding", action="append", default=[], type=_parse_finding)
    parser.add_argument("--discover", action="append", default=[], metavar="TITLE")
    parser.add_argument("--sleep", type=float, default=0.0)
    args = parser.parse_args(argv)
    if args.health:
        return _health(fail=args.fail)

    document = read_task_document(Path(args.task_file))
    if args.sleep > 0:
        time.sleep(args.sleep)

    task = document.task
    outcome_path = Path(document.outcome_file)
    if args.fail:
        write_json(
            outcome_path,
            {"success": False, "failure_reason": f"echo agent failed {task['id']}"},
        )
        return 1

    write_json(
        outcome_path,
        {
            "success": True,
            "summary": f"echo: {task.get('title', task['id'])}",
            "new_tasks": [
                {"title": title, "chapter": task.get("chapter")} for title in args.discover
            ],
            "findings": args.finding,
        },
    )
    return 0


def _health(*, fail: bool) -> int:
    reason = os.environ.get("MANUSCRIPT_LOOP_HEALTH_REASON", "manual")
    if fail:
        print(f"echo health check failed ({reason})", file=sys.stderr)
        return 1
    print(f"echo health check passed ({reason})")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
