from __future__ import annotations

from pathlib import Path

import allure
import pytest

from manuscript_loop.config import DEFAULT_ECHO_COMMAND, LoopSettings, Settings, WorkerSettings
from manuscript_loop.orchestrator.review import DEFAULT_REVIEW_AGENTS

pytestmark = [
    allure.epic("Operator Tooling"),
    allure.feature("Configuration"),
]

ENV_KEYS = (
    "MANUSCRIPT_LOOP_DB_PATH",
    "MANUSCRIPT_LOOP_REVIEW_PERIOD",
    "MANUSCRIPT_LOOP_BREAKER_THRESHOLD",
    "MANUSCRIPT_LOOP_REVIEW_AGENTS",
    "MANUSCRIPT_LOOP_MAX_ITERATIONS",
    "MANUSCRIPT_LOOP_SNAPSHOT_PATH",
    "MANUSCRIPT_LOOP_CONTENT_COMMAND",
    "MANUSCRIPT_LOOP_REVIEW_COMMAND",
    "MANUSCRIPT_LOOP_HEALTH_COMMAND",
    "MANUSCRIPT_LOOP_HEALTH_TIMEOUT_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".manuscript_loop.db")
    assert settings.loop.review_period == 6
    assert settings.loop.breaker_threshold == 3
    assert settings.loop.review_agents == DEFAULT_REVIEW_AGENTS
    assert settings.loop.max_iterations is None
    assert settings.loop.snapshot_path is None
    assert settings.worker.content_command == DEFAULT_ECHO_COMMAND
    assert settings.worker.review_command is None
    assert settings.worker.health_command is None
    assert settings.worker.health_timeout_seconds == 300
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MANUSCRIPT_LOOP_REVIEW_PERIOD", "4")
    monkeypatch.setenv("MANUSCRIPT_LOOP_BREAKER_THRESHOLD", "5")
    monkeypatch.setenv("MANUSCRIPT_LOOP_REVIEW_AGENTS", " slop-checker, ,tech-accuracy ")
    monkeypatch.setenv("MANUSCRIPT_LOOP_MAX_ITERATIONS", "40")
    monkeypatch.setenv("MANUSCRIPT_LOOP_SNAPSHOT_PATH", "book/tasks.json")
    monkeypatch.setenv("MANUSCRIPT_LOOP_REVIEW_COMMAND", "claude -p {prompt_file}")
    monkeypatch.setenv("MANUSCRIPT_LOOP_HEALTH_COMMAND", "bash scripts/health-check.sh")
    monkeypatch.setenv("MANUSCRIPT_LOOP_HEALTH_TIMEOUT_SECONDS", "60")

    settings = Settings.from_env()

    assert settings.loop.review_period == 4
    assert settings.loop.breaker_threshold == 5
    assert settings.loop.review_agents == ("slop-checker", "tech-accuracy")
    assert settings.loop.max_iterations == 40
    assert settings.loop.snapshot_path == Path("book/tasks.json")
    assert settings.worker.review_command == "claude -p {prompt_file}"
    assert settings.worker.health_command == "bash scripts/health-check.sh"
    assert settings.worker.health_timeout_seconds == 60


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MANUSCRIPT_LOOP_DB_PATH", "ignored.db")

    assert Settings.from_env(tmp_path / "loop.db").db_path == tmp_path / "loop.db"


def test_zero_review_period_disables_sweeps_without_agents() -> None:
    Settings(loop=LoopSettings(review_period=0, review_agents=())).validate()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(loop=LoopSettings(breaker_threshold=0)), "BREAKER_THRESHOLD"),
        (Settings(loop=LoopSettings(review_period=-1)), "REVIEW_PERIOD"),
        (Settings(loop=LoopSettings(review_agents=())), "at least one agent"),
        (Settings(loop=LoopSettings(review_agents=("a", "a"))), "must not repeat"),
        (Settings(loop=LoopSettings(review_agents=("../up",))), "letters, digits"),
        (Settings(loop=LoopSettings(max_iterations=0)), "MAX_ITERATIONS"),
        (Settings(loop=LoopSettings(max_idle_iterations=0)), "MAX_IDLE_ITERATIONS"),
        (Settings(worker=WorkerSettings(timeout_seconds=0)), "WORKER_TIMEOUT_SECONDS"),
        (Settings(worker=WorkerSettings(health_timeout_seconds=0)), "HEALTH_TIMEOUT_SECONDS"),
        (Settings(worker=WorkerSettings(health_command=" ")), "HEALTH_COMMAND"),
        (Settings(worker=WorkerSettings(content_command="  ")), "CONTENT_COMMAND"),
        (Settings(sqlite_busy_timeout_ms=0), "SQLITE_BUSY_TIMEOUT_MS"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_from_env_rejects_non_integer_threshold(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MANUSCRIPT_LOOP_BREAKER_THRESHOLD", "three")

    with pytest.raises(ValueError, match="invalid literal"):
        Settings.from_env()
