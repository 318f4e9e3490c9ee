"""Single-threaded scheduler loop: resolve, rank, dispatch, commit."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path

from manuscript_loop.orchestrator.breaker import CircuitBreaker
from manuscript_loop.orchestrator.cadence import ReviewCadence
from manuscript_loop.orchestrator.models import (
    LoopState,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from manuscript_loop.orchestrator.repository import TaskStore
from manuscript_loop.orchestrator.resolver import resolve
from manuscript_loop.orchestrator.review import (
    DEFAULT_REVIEW_AGENTS,
    build_review_tasks,
    remediation_tasks,
)
from manuscript_loop.orchestrator.scoring import DEFAULT_WEIGHTS, ScoreWeights, rank
from manuscript_loop.orchestrator.snapshot import build_snapshot, write_snapshot
from manuscript_loop.orchestrator.workers.base import TaskWorker, WorkerContext, WorkerOutcome
from manuscript_loop.orchestrator.workers.health_check import (
    REASON_ALL_COMPLETE,
    REASON_REVIEW_SWEEP,
    HealthCheck,
    HealthCheckResult,
)

logger = logging.getLogger(__name__)

IDLE_NO_ELIGIBLE_WORK = "no_eligible_work"
IDLE_CIRCUIT_OPEN = "circuit_open"
IDLE_CLAIM_CONFLICT = "claim_conflict"


class IterationKind(str, Enum):
    DISPATCH = "dispatch"
    REVIEW_SWEEP = "review_sweep"
    IDLE = "idle"


class StopReason(str, Enum):
    ALL_COMPLETE = "all_complete"
    IDLE_LIMIT = "idle_limit"
    ITERATION_LIMIT = "iteration_limit"
    TIME_LIMIT = "time_limit"
    SIGNAL = "signal"


@dataclass(slots=True)
class IterationReport:
    """What one scheduler iteration did."""

    iteration: int
    kind: IterationKind
    idle_reason: str | None = None
    dispatched: list[str] = field(default_factory=list)
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    rejected: list[tuple[str, str]] = field(default_factory=list)
    dangling: list[str] = field(default_factory=list)
    breaker_opened: bool = False
    health: HealthCheckResult | None = None

    @property
    def idle(self) -> bool:
        return self.kind is IterationKind.IDLE


@dataclass(slots=True)
class LoopRunSummary:
    """Aggregate loop counters for CLI reporting."""

    iterations: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    review_sweeps: int = 0
    idle_iterations: int = 0
    created: int = 0
    stop_reason: StopReason | None = None
    health_checks: list[HealthCheckResult] = field(default_factory=list)

    def add(self, report: IterationReport) -> None:
        self.iterations += 1
        self.dispatched += len(report.dispatched)
        self.succeeded += len(report.succeeded)
        self.failed += len(report.failed)
        self.created += len(report.created)
        if report.kind is IterationKind.REVIEW_SWEEP:
            self.review_sweeps += 1
        if report.idle:
            self.idle_iterations += 1
        if report.health is not None:
            self.health_checks.append(report.health)


class Scheduler:
    """Drives the task store one iteration at a time.

    Exactly one task is in progress at any moment. Given the same store
    snapshot, clock, and worker outcomes, two schedulers dispatch the same ids
    in the same order.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        worker: TaskWorker,
        breaker_threshold: int = 3,
        review_period: int = 6,
        review_agents: Sequence[str] = DEFAULT_REVIEW_AGENTS,
        snapshot_path: Path | None = None,
        weights: ScoreWeights = DEFAULT_WEIGHTS,
        clock: Callable[[], datetime] | None = None,
        sleep_seconds: float = 0.0,
        health_check: HealthCheck | None = None,
    ) -> None:
        if breaker_threshold < 1:
            raise ValueError("breaker_threshold must be >= 1")
        self.store = store
        self.worker = worker
        self.breaker_threshold = breaker_threshold
        self.cadence = ReviewCadence(review_period)
        self.review_agents = tuple(review_agents)
        self.snapshot_path = snapshot_path
        self.weights = weights
        self.clock = clock or store.clock
        self.sleep_seconds = sleep_seconds
        self.health_check = health_check
        self._started = False
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def start(self) -> list[str]:
        """Reconcile dispatches interrupted by a crash; runs once per scheduler."""

        if self._started:
            return []
        self._started = True
        return self.store.reconcile_interrupted()

    def request_stop(self) -> None:
        self._stop_requested = True

    def run_iteration(self) -> IterationReport:
        """Run one scheduler iteration and persist everything it changed."""

        self.start()
        state = self.store.load_loop_state()
        state.iteration_count += 1
        iteration = state.iteration_count
        self.store.save_loop_state(state)
        breaker = CircuitBreaker.from_state(state, threshold=self.breaker_threshold)

        if self.cadence.should_run(iteration):
            report = self._run_review_sweep(iteration=iteration, state=state)
            report.health = self._run_health_check(REASON_REVIEW_SWEEP)
        else:
            report = self._run_dispatch(iteration=iteration, state=state, breaker=breaker)
        self._write_snapshot()
        return report

    def run_loop(
        self,
        *,
        max_iterations: int | None = None,
        max_idle_iterations: int | None = 1,
        max_seconds: float | None = None,
    ) -> LoopRunSummary:
        """Run iterations until done, idle, out of budget, or signalled.

        Args:
            max_iterations: Stop after this many iterations (None = unlimited).
            max_idle_iterations: Stop after this many consecutive idle
                iterations (None = never stop on idling).
            max_seconds: Wall-clock budget for the whole run.
        """

        summary = LoopRunSummary()
        started_monotonic = time.monotonic()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                stop_reason = self._stop_reason(
                    summary=summary,
                    max_iterations=max_iterations,
                    max_seconds=max_seconds,
                    started_monotonic=started_monotonic,
                )
                if stop_reason is not None:
                    summary.stop_reason = stop_reason
                    if stop_reason is StopReason.ALL_COMPLETE:
                        health = self._run_health_check(REASON_ALL_COMPLETE)
                        if health is not None:
                            summary.health_checks.append(health)
                    break

                report = self.run_iteration()
                summary.add(report)
                if report.idle:
                    consecutive_idle += 1
                    if max_idle_iterations is not None and consecutive_idle >= max_idle_iterations:
                        summary.stop_reason = StopReason.IDLE_LIMIT
                        break
                else:
                    consecutive_idle = 0
                if self.sleep_seconds > 0:
                    self._sleep_with_stop(self.sleep_seconds)

        logger.info(
            "Loop stopped (%s) after %d iterations: dispatched=%d succeeded=%d failed=%d",
            summary.stop_reason.value if summary.stop_reason else "unknown",
            summary.iterations,
            summary.dispatched,
            summary.succeeded,
            summary.failed,
        )
        return summary

    def _stop_reason(
        self,
        *,
        summary: LoopRunSummary,
        max_iterations: int | None,
        max_seconds: float | None,
        started_monotonic: float,
    ) -> StopReason | None:
        if self._stop_requested:
            logger.info("Stop requested by %s", self._stop_signal_name or "caller")
            return StopReason.SIGNAL
        if max_iterations is not None and summary.iterations >= max_iterations:
            return StopReason.ITERATION_LIMIT
        if max_seconds is not None and time.monotonic() - started_monotonic >= max_seconds:
            return StopReason.TIME_LIMIT
        tasks = self.store.list_tasks()
        if tasks and all(task.status is TaskStatus.COMPLETE for task in tasks):
            return StopReason.ALL_COMPLETE
        return None

    def _run_dispatch(
        self,
        *,
        iteration: int,
        state: LoopState,
        breaker: CircuitBreaker,
    ) -> IterationReport:
        tasks = self.store.list_tasks()
        resolution = resolve(tasks)
        dangling = [error.task_id for error in resolution.dangling]
        for error in resolution.dangling:
            logger.warning("%s", error)

        candidates = resolution.eligible
        if not candidates:
            logger.info("Iteration %d: idle, no eligible work", iteration)
            return IterationReport(
                iteration=iteration,
                kind=IterationKind.IDLE,
                idle_reason=IDLE_NO_ELIGIBLE_WORK,
                dangling=dangling,
            )
        if not breaker.can_dispatch_content_task():
            candidates = [task for task in candidates if not task.is_content]
            if not candidates:
                logger.warning(
                    "Iteration %d: blocked by circuit breaker (%d consecutive failures)",
                    iteration,
                    breaker.consecutive_failures,
                )
                return IterationReport(
                    iteration=iteration,
                    kind=IterationKind.IDLE,
                    idle_reason=IDLE_CIRCUIT_OPEN,
                    dangling=dangling,
                )

        ranked = rank(candidates, tasks, now=self.clock(), weights=self.weights)
        self.store.promote(task.task_id for task, _ in ranked if task.status is TaskStatus.PENDING)
        self.store.update_scores({task.task_id: task_score for task, task_score in ranked})

        top, top_score = ranked[0]
        report = IterationReport(iteration=iteration, kind=IterationKind.DISPATCH, dangling=dangling)
        if not self._dispatch_one(
            task_id=top.task_id,
            score=top_score,
            iteration=iteration,
            state=state,
            breaker=breaker,
            report=report,
        ):
            report.kind = IterationKind.IDLE
            report.idle_reason = IDLE_CLAIM_CONFLICT
        return report

    def _run_review_sweep(self, *, iteration: int, state: LoopState) -> IterationReport:
        report = IterationReport(iteration=iteration, kind=IterationKind.REVIEW_SWEEP)
        created, skipped = self.store.create_many(
            build_review_tasks(iteration, self.review_agents),
            skip_existing=True,
        )
        report.created.extend(task.task_id for task in created)
        for task_id in skipped:
            logger.warning("Iteration %d: review task %s already exists", iteration, task_id)
            report.rejected.append((task_id, "already exists"))
        logger.info(
            "Iteration %d: review sweep with %d agents",
            iteration,
            len(created),
        )

        scores = {
            task.task_id: task_score
            for task, task_score in rank(
                created,
                self.store.list_tasks(),
                now=self.clock(),
                weights=self.weights,
            )
        }
        # Review outcomes never touch the breaker; the instance only carries state through.
        breaker = CircuitBreaker.from_state(state, threshold=self.breaker_threshold)
        for task in created:
            if self._stop_requested:
                logger.info("Stop requested; remaining review tasks stay pending")
                break
            self.store.promote([task.task_id])
            self._dispatch_one(
                task_id=task.task_id,
                score=scores[task.task_id],
                iteration=iteration,
                state=state,
                breaker=breaker,
                report=report,
            )
            state = self.store.load_loop_state()
        return report

    def _dispatch_one(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        score: int,
        iteration: int,
        state: LoopState,
        breaker: CircuitBreaker,
        report: IterationReport,
    ) -> bool:
        claimed = self.store.claim(task_id, score=score)
        if claimed is None:
            logger.warning("Iteration %d: task %s was no longer eligible", iteration, task_id)
            return False

        logger.info("Iteration %d: dispatching %s (score=%d)", iteration, task_id, score)
        report.dispatched.append(task_id)
        outcome = self._execute(claimed, iteration=iteration)

        follow_ups: list[TaskCreate] = []
        if outcome.success:
            follow_ups.extend(discovered_follow_ups(claimed, outcome.new_tasks))
            follow_ups.extend(remediation_tasks(claimed, outcome.findings))

        if claimed.is_content and breaker.record_outcome(outcome.success):
            report.breaker_opened = True
        state = breaker.apply_to(state)
        if outcome.success:
            state.last_successful_task_id = claimed.task_id
            state.last_checkpoint_at = self.clock()
        else:
            state.failed_attempts += 1

        commit = self.store.commit_outcome(
            task_id=claimed.task_id,
            success=outcome.success,
            loop_state=state,
            failure_reason=outcome.failure_reason,
            summary=outcome.summary,
            follow_ups=follow_ups,
        )
        if outcome.success:
            report.succeeded.append(claimed.task_id)
        else:
            report.failed.append(claimed.task_id)
            logger.warning(
                "Iteration %d: task %s failed: %s",
                iteration,
                claimed.task_id,
                outcome.failure_reason or "no reason given",
            )
        report.created.extend(task.task_id for task in commit.created)
        report.rejected.extend(commit.rejected)
        return True

    def _execute(self, task: TaskView, *, iteration: int) -> WorkerOutcome:
        context = WorkerContext(
            iteration=iteration,
            shutdown_requested=lambda: self._stop_requested,
        )
        try:
            return self.worker.execute(task, context)
        except Exception as error:  # noqa: BLE001
            logger.exception("Worker raised while executing %s", task.task_id)
            return WorkerOutcome.failed(f"Worker error: {error}")

    def _run_health_check(self, reason: str) -> HealthCheckResult | None:
        if self.health_check is None:
            return None
        return self.health_check.run(reason, shutdown_requested=lambda: self._stop_requested)

    def _write_snapshot(self) -> None:
        if self.snapshot_path is None:
            return
        document = build_snapshot(
            self.store.list_tasks(),
            self.store.load_loop_state(),
            now=self.clock(),
        )
        write_snapshot(self.snapshot_path, document)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_requested = True
            self._stop_signal_name = name
            logger.warning("Received %s; stopping after the current iteration", name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def discovered_follow_ups(parent: TaskView, new_tasks: Sequence[TaskCreate]) -> list[TaskCreate]:
    """Give worker-discovered tasks deterministic ids and a source link."""

    follow_ups: list[TaskCreate] = []
    for index, payload in enumerate(new_tasks, start=1):
        follow_ups.append(
            replace(
                payload,
                task_id=payload.task_id or f"{parent.task_id}-discovered-{index:02d}",
                source_task_id=payload.source_task_id or parent.task_id,
            ),
        )
    return follow_ups
