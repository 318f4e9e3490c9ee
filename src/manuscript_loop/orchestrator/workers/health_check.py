"""Project health check command run after review sweeps and on completion."""

from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from manuscript_loop.orchestrator.workers.command_worker import (
    read_tail,
    run_subprocess_with_shutdown,
)

logger = logging.getLogger(__name__)

REASON_REVIEW_SWEEP = "review_sweep"
REASON_ALL_COMPLETE = "all_complete"


@dataclass(slots=True)
class HealthCheckResult:
    """Outcome of one health check run."""

    reason: str
    ok: bool
    exit_code: int | None
    timed_out: bool = False
    summary: str = ""


class HealthCheck:
    """Run a configured shell-style command and report whether it passed.

    A failing check is reported, never raised: the loop keeps going and the
    operator reads the result from the iteration report and the logs.
    """

    def __init__(
        self,
        *,
        command: str,
        log_dir: Path,
        timeout_seconds: int = 300,
        cwd: Path | None = None,
    ) -> None:
        argv = shlex.split(command)
        if not argv:
            raise ValueError("Health check command is empty.")
        self.argv = argv
        self.log_dir = log_dir
        self.timeout_seconds = timeout_seconds
        self.cwd = cwd

    def run(
        self,
        reason: str,
        *,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> HealthCheckResult:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = self.log_dir / f"{reason}.stdout.log"
        stderr_path = self.log_dir / f"{reason}.stderr.log"
        env = os.environ.copy()
        env["MANUSCRIPT_LOOP_HEALTH_REASON"] = reason

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                result = run_subprocess_with_shutdown(
                    run_args=self.argv,
                    env=env,
                    cwd=self.cwd or Path.cwd(),
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=shutdown_requested,
                    graceful_shutdown_seconds=0,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )
        except OSError as error:
            logger.warning("Health check (%s) could not start: %s", reason, error)
            return HealthCheckResult(reason=reason, ok=False, exit_code=None, summary=str(error))

        if result.timed_out:
            logger.warning("Health check (%s) timed out after %ds", reason, self.timeout_seconds)
            return HealthCheckResult(
                reason=reason,
                ok=False,
                exit_code=result.exit_code,
                timed_out=True,
                summary=f"timed out after {self.timeout_seconds}s",
            )
        if result.exit_code != 0:
            summary = read_tail(stderr_path) or read_tail(stdout_path)
            logger.warning(
                "Health check (%s) failed with code %d: %s",
                reason,
                result.exit_code,
                summary or "no output",
            )
            return HealthCheckResult(
                reason=reason,
                ok=False,
                exit_code=result.exit_code,
                summary=summary,
            )
        logger.info("Health check (%s) passed", reason)
        return HealthCheckResult(
            reason=reason,
            ok=True,
            exit_code=0,
            summary=read_tail(stdout_path),
        )
