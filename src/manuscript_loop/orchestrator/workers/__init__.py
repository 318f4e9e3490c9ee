"""Task worker implementations."""

from manuscript_loop.orchestrator.workers.base import TaskWorker, WorkerContext, WorkerOutcome
from manuscript_loop.orchestrator.workers.command_worker import CommandWorker, CommandWorkerError
from manuscript_loop.orchestrator.workers.health_check import HealthCheck, HealthCheckResult

__all__ = [
    "CommandWorker",
    "CommandWorkerError",
    "HealthCheck",
    "HealthCheckResult",
    "TaskWorker",
    "WorkerContext",
    "WorkerOutcome",
]
