"""Runtime configuration for the manuscript loop."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

from manuscript_loop.orchestrator.lifecycle import TASK_ID_PATTERN
from manuscript_loop.orchestrator.review import DEFAULT_REVIEW_AGENTS

DEFAULT_ECHO_COMMAND = (
    f"{shlex.quote(sys.executable)} -m manuscript_loop.orchestrator.workers.echo_agent "
    "--task-file {task_file}"
)


@dataclass(slots=True)
class LoopSettings:
    """Scheduler, breaker, and cadence settings."""

    review_period: int = 6
    breaker_threshold: int = 3
    review_agents: tuple[str, ...] = DEFAULT_REVIEW_AGENTS
    sleep_seconds: float = 0.0
    max_iterations: int | None = None
    max_idle_iterations: int = 1
    snapshot_path: Path | None = None


@dataclass(slots=True)
class WorkerSettings:
    """Agent command execution settings."""

    workdir_root: Path = Path(".manuscript_loop/workdirs")
    content_command: str = DEFAULT_ECHO_COMMAND
    review_command: str | None = None
    timeout_seconds: int = 1_800
    graceful_shutdown_seconds: int = 30
    health_command: str | None = None
    health_timeout_seconds: int = 300


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".manuscript_loop.db")
    sqlite_busy_timeout_ms: int = 5_000
    loop: LoopSettings = field(default_factory=LoopSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        snapshot_path = os.getenv("MANUSCRIPT_LOOP_SNAPSHOT_PATH", "").strip()
        max_iterations = os.getenv("MANUSCRIPT_LOOP_MAX_ITERATIONS", "").strip()
        review_command = os.getenv("MANUSCRIPT_LOOP_REVIEW_COMMAND", "").strip()
        health_command = os.getenv("MANUSCRIPT_LOOP_HEALTH_COMMAND", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("MANUSCRIPT_LOOP_DB_PATH", ".manuscript_loop.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("MANUSCRIPT_LOOP_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            loop=LoopSettings(
                review_period=int(os.getenv("MANUSCRIPT_LOOP_REVIEW_PERIOD", "6")),
                breaker_threshold=int(os.getenv("MANUSCRIPT_LOOP_BREAKER_THRESHOLD", "3")),
                review_agents=_env_csv("MANUSCRIPT_LOOP_REVIEW_AGENTS", DEFAULT_REVIEW_AGENTS),
                sleep_seconds=float(os.getenv("MANUSCRIPT_LOOP_SLEEP_SECONDS", "0")),
                max_iterations=int(max_iterations) if max_iterations else None,
                max_idle_iterations=int(os.getenv("MANUSCRIPT_LOOP_MAX_IDLE_ITERATIONS", "1")),
                snapshot_path=Path(snapshot_path) if snapshot_path else None,
            ),
            worker=WorkerSettings(
                workdir_root=Path(
                    os.getenv("MANUSCRIPT_LOOP_WORKDIR_ROOT", ".manuscript_loop/workdirs"),
                ),
                content_command=os.getenv("MANUSCRIPT_LOOP_CONTENT_COMMAND", DEFAULT_ECHO_COMMAND),
                review_command=review_command or None,
                timeout_seconds=int(os.getenv("MANUSCRIPT_LOOP_WORKER_TIMEOUT_SECONDS", "1800")),
                graceful_shutdown_seconds=int(
                    os.getenv("MANUSCRIPT_LOOP_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                health_command=health_command or None,
                health_timeout_seconds=int(
                    os.getenv("MANUSCRIPT_LOOP_HEALTH_TIMEOUT_SECONDS", "300"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot run with."""

        if self.loop.breaker_threshold < 1:
            raise ValueError("MANUSCRIPT_LOOP_BREAKER_THRESHOLD must be >= 1.")
        if self.loop.review_period < 0:
            raise ValueError("MANUSCRIPT_LOOP_REVIEW_PERIOD must be >= 0 (0 disables sweeps).")
        if self.loop.review_period > 0 and not self.loop.review_agents:
            raise ValueError(
                "MANUSCRIPT_LOOP_REVIEW_AGENTS must name at least one agent "
                "when review sweeps are enabled.",
            )
        if len(set(self.loop.review_agents)) != len(self.loop.review_agents):
            raise ValueError("MANUSCRIPT_LOOP_REVIEW_AGENTS must not repeat an agent.")
        for agent in self.loop.review_agents:
            if not TASK_ID_PATTERN.fullmatch(agent):
                raise ValueError(
                    f"MANUSCRIPT_LOOP_REVIEW_AGENTS entry {agent!r} must use only letters, "
                    "digits, '.', '_' or '-'.",
                )
        if self.loop.sleep_seconds < 0:
            raise ValueError("MANUSCRIPT_LOOP_SLEEP_SECONDS must be >= 0.")
        if self.loop.max_iterations is not None and self.loop.max_iterations < 1:
            raise ValueError("MANUSCRIPT_LOOP_MAX_ITERATIONS must be >= 1 when set.")
        if self.loop.max_idle_iterations < 1:
            raise ValueError("MANUSCRIPT_LOOP_MAX_IDLE_ITERATIONS must be >= 1.")
        if self.worker.timeout_seconds <= 0:
            raise ValueError("MANUSCRIPT_LOOP_WORKER_TIMEOUT_SECONDS must be > 0.")
        if self.worker.health_timeout_seconds <= 0:
            raise ValueError("MANUSCRIPT_LOOP_HEALTH_TIMEOUT_SECONDS must be > 0.")
        if self.worker.health_command is not None and not self.worker.health_command.strip():
            raise ValueError("MANUSCRIPT_LOOP_HEALTH_COMMAND must not be blank when set.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("MANUSCRIPT_LOOP_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not self.worker.content_command.strip():
            raise ValueError("MANUSCRIPT_LOOP_CONTENT_COMMAND must not be empty.")


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())
