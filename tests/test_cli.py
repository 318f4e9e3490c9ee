from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import ScriptedWorker

from manuscript_loop import main
from manuscript_loop.main import manuscript_loop
from manuscript_loop.orchestrator.workers.base import WorkerOutcome

pytestmark = [
    allure.epic("Operator Tooling"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for key in (
        "MANUSCRIPT_LOOP_SNAPSHOT_PATH",
        "MANUSCRIPT_LOOP_MAX_ITERATIONS",
        "MANUSCRIPT_LOOP_MAX_IDLE_ITERATIONS",
        "MANUSCRIPT_LOOP_REVIEW_PERIOD",
        "MANUSCRIPT_LOOP_REVIEW_AGENTS",
        "MANUSCRIPT_LOOP_BREAKER_THRESHOLD",
        "MANUSCRIPT_LOOP_REVIEW_COMMAND",
        "MANUSCRIPT_LOOP_HEALTH_COMMAND",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("MANUSCRIPT_LOOP_WORKDIR_ROOT", str(tmp_path / "work"))


def _invoke(*args: str):
    return CliRunner().invoke(manuscript_loop, list(args))


def test_seed_list_and_next(tmp_path: Path) -> None:
    db_path = str(tmp_path / "loop.db")

    seeded = _invoke("loop", "seed", "--db-path", db_path, "--chapters", "2")
    listed = _invoke("tasks", "list", "--db-path", db_path)
    ranked = _invoke("loop", "next", "--db-path", db_path, "--limit", "1")

    assert seeded.exit_code == 0, seeded.output
    assert "Seeded 2 tasks, skipped 0 chapters" in seeded.output
    assert "  created ch02-draft" in seeded.output
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 2" in listed.output
    assert "ch01-draft kind=milestone status=pending priority=high" in listed.output
    assert ranked.exit_code == 0, ranked.output
    assert "Next 1 eligible task(s):" in ranked.output
    assert "ch01-draft" in ranked.output
    assert "ch02-draft" not in ranked.output


def test_seed_requires_exactly_one_source(tmp_path: Path) -> None:
    result = _invoke("loop", "seed", "--db-path", str(tmp_path / "loop.db"))

    assert result.exit_code == 1
    assert "--chapters or --features" in result.output


def test_seed_from_features_file(tmp_path: Path) -> None:
    db_path = str(tmp_path / "loop.db")
    features = tmp_path / "features.json"
    features.write_text(
        json.dumps({"chapters": {"ch05": {"milestones": {"draft": True}}}}),
        "utf-8",
    )

    result = _invoke("loop", "seed", "--db-path", db_path, "--features", str(features))

    assert result.exit_code == 0, result.output
    assert "  created ch05-code_written" in result.output


def test_step_runs_echo_agent(tmp_path: Path, monkeypatch, echo_agent_env: str) -> None:
    db_path = str(tmp_path / "loop.db")
    monkeypatch.setenv("MANUSCRIPT_LOOP_CONTENT_COMMAND", echo_agent_env)
    _invoke("loop", "seed", "--db-path", db_path, "--chapters", "1")

    result = _invoke("loop", "step", "--db-path", db_path)
    progress = _invoke("loop", "progress", "--db-path", db_path)

    assert result.exit_code == 0, result.output
    assert "Iteration 1: dispatch dispatched=1 succeeded=1 failed=0 created=1" in result.output
    assert "  ok     ch01-draft" in result.output
    assert "  new    ch01-code_written" in result.output
    assert (tmp_path / "work" / "ch01-draft" / "task.json").exists()
    assert progress.exit_code == 0, progress.output
    assert "Iteration: 1" in progress.output
    assert "code_written (pending)" in progress.output


def test_run_with_scripted_worker(tmp_path: Path, monkeypatch) -> None:
    db_path = str(tmp_path / "loop.db")
    worker = ScriptedWorker({"ch01-draft": [WorkerOutcome.failed("outline missing")]})
    monkeypatch.setattr(main.LOOP_CONTROLLER, "worker", worker)
    _invoke("loop", "seed", "--db-path", db_path, "--chapters", "1")

    result = _invoke("loop", "run", "--db-path", db_path, "--iterations", "3")
    inspected = _invoke("tasks", "inspect", "--db-path", db_path, "ch01-draft")

    assert result.exit_code == 0, result.output
    assert "Stopped: idle_limit" in result.output
    assert "Iteration count: 2" in result.output
    assert worker.calls == ["ch01-draft"]
    assert "Status: failed" in inspected.output
    assert "Failure: outline missing" in inspected.output


def test_breaker_report_and_reset(tmp_path: Path, monkeypatch) -> None:
    db_path = str(tmp_path / "loop.db")
    monkeypatch.setenv("MANUSCRIPT_LOOP_BREAKER_THRESHOLD", "1")
    monkeypatch.setattr(
        main.LOOP_CONTROLLER,
        "worker",
        ScriptedWorker(default=lambda task: WorkerOutcome.failed("broken")),
    )
    _invoke("loop", "seed", "--db-path", db_path, "--chapters", "2")
    stepped = _invoke("loop", "step", "--db-path", db_path)

    status = _invoke("loop", "breaker", "--db-path", db_path)
    reset = _invoke("loop", "breaker-reset", "--db-path", db_path)

    assert "  circuit breaker opened" in stepped.output
    assert "Circuit breaker: OPEN (1/1 consecutive failures, trips=1)" in status.output
    assert "Threshold: 1" in status.output
    assert "Circuit breaker reset: consecutive_failures=0 trips=1" in reset.output


def test_task_add_requeue_and_delete(tmp_path: Path, monkeypatch) -> None:
    db_path = str(tmp_path / "loop.db")
    monkeypatch.setattr(
        main.LOOP_CONTROLLER,
        "worker",
        ScriptedWorker(default=lambda task: WorkerOutcome.failed("needs sources")),
    )

    add = ("tasks", "add", "--db-path", db_path, "--id", "glossary")

    added = _invoke(*add, "--title", "Write glossary", "--priority", "critical")
    duplicate = _invoke(*add, "--title", "Again")
    _invoke("loop", "step", "--db-path", db_path)
    requeued = _invoke("tasks", "requeue", "--db-path", db_path, "glossary")
    again = _invoke("tasks", "requeue", "--db-path", db_path, "glossary")
    deleted = _invoke("tasks", "delete", "--db-path", db_path, "glossary")
    missing = _invoke("tasks", "inspect", "--db-path", db_path, "glossary")

    assert "Task created: task_id=glossary status=pending" in added.output
    assert duplicate.exit_code == 1
    assert "Task already exists: glossary" in duplicate.output
    assert "Task re-queued: task_id=glossary status=pending" in requeued.output
    assert again.exit_code == 1
    assert "Task deleted: task_id=glossary" in deleted.output
    assert missing.exit_code == 1
    assert "Task not found: glossary" in missing.output


def test_add_rejects_self_dependency(tmp_path: Path) -> None:
    db_path = str(tmp_path / "loop.db")

    result = _invoke(
        "tasks", "add", "--db-path", db_path, "--title", "C", "--id", "c", "--depends-on", "c",
    )

    assert result.exit_code == 1
    assert "Dependency cycle through c" in result.output


def test_validate_fails_on_dangling_dependency(tmp_path: Path) -> None:
    db_path = str(tmp_path / "loop.db")
    _invoke("tasks", "add", "--db-path", db_path, "--title", "Orphan", "--depends-on", "x")

    result = _invoke("loop", "validate", "--db-path", db_path)

    assert result.exit_code == 1
    assert "Found 1 issue(s) in 1 tasks:" in result.output


def test_dump_and_import(tmp_path: Path) -> None:
    db_path = str(tmp_path / "loop.db")
    other_db = str(tmp_path / "other.db")
    snapshot = tmp_path / "tasks.json"
    _invoke("loop", "seed", "--db-path", db_path, "--chapters", "3")

    dumped = _invoke("loop", "dump", "--db-path", db_path, "--output", str(snapshot))
    imported = _invoke("loop", "import", "--db-path", other_db, str(snapshot))
    validated = _invoke("loop", "validate", "--db-path", other_db)

    assert f"Snapshot written: {snapshot} (3 tasks)" in dumped.output
    assert json.loads(snapshot.read_text("utf-8"))["stats"]["total"] == 3
    assert f"Imported 3 tasks from {snapshot}" in imported.output
    assert validated.exit_code == 0, validated.output
    assert "OK: 3 tasks, no issues." in validated.output


def test_inspect_unknown_task_exits_non_zero(tmp_path: Path) -> None:
    result = _invoke("tasks", "inspect", "--db-path", str(tmp_path / "loop.db"), "ghost")

    assert result.exit_code == 1
    assert "Task not found: ghost" in result.output


def test_add_rejects_path_like_task_id(tmp_path: Path) -> None:
    db_path = str(tmp_path / "loop.db")

    result = _invoke("tasks", "add", "--db-path", db_path, "--id", "../../x", "--title", "X")
    listed = _invoke("tasks", "list", "--db-path", db_path)

    assert result.exit_code == 1
    assert "invalid task id" in result.output
    assert "Tasks: 0" in listed.output


def test_run_reports_health_check_on_completion(
    tmp_path: Path,
    monkeypatch,
    echo_agent_env: str,
) -> None:
    db_path = str(tmp_path / "loop.db")
    health_command = echo_agent_env.replace("--task-file {task_file}", "--health")
    monkeypatch.setenv("MANUSCRIPT_LOOP_HEALTH_COMMAND", health_command)
    monkeypatch.setattr(main.LOOP_CONTROLLER, "worker", ScriptedWorker())
    _invoke("tasks", "add", "--db-path", db_path, "--id", "glossary", "--title", "Glossary")

    result = _invoke("loop", "run", "--db-path", db_path, "--iterations", "3")

    assert result.exit_code == 0, result.output
    assert "Stopped: all_complete" in result.output
    assert "  health check (all_complete): ok" in result.output
    assert (tmp_path / "work" / "_health" / "all_complete.stdout.log").exists()
