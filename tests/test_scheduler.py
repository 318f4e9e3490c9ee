from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from conftest import FakeClock, ScriptedWorker

from manuscript_loop.orchestrator.errors import PersistenceError
from manuscript_loop.orchestrator.lifecycle import build_milestone_task
from manuscript_loop.orchestrator.models import (
    Finding,
    LoopState,
    Milestone,
    Priority,
    Severity,
    TaskCreate,
    TaskKind,
    TaskStatus,
    TaskView,
)
from manuscript_loop.orchestrator.repository import TaskStore
from manuscript_loop.orchestrator.scheduler import (
    IDLE_CIRCUIT_OPEN,
    IDLE_NO_ELIGIBLE_WORK,
    IterationKind,
    Scheduler,
    StopReason,
)
from manuscript_loop.orchestrator.services import LoopService
from manuscript_loop.orchestrator.workers.base import WorkerContext, WorkerOutcome
from manuscript_loop.orchestrator.workers.health_check import (
    REASON_ALL_COMPLETE,
    REASON_REVIEW_SWEEP,
    HealthCheckResult,
)

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Dispatch Loop"),
]

AGENTS = ("slop-checker", "tech-accuracy")


def _scheduler(
    store: TaskStore,
    worker: ScriptedWorker,
    *,
    review_period: int = 0,
    breaker_threshold: int = 3,
    snapshot_path: Path | None = None,
) -> Scheduler:
    return Scheduler(
        store=store,
        worker=worker,
        breaker_threshold=breaker_threshold,
        review_period=review_period,
        review_agents=AGENTS,
        snapshot_path=snapshot_path,
    )


def _always_fail(task: TaskView) -> WorkerOutcome:
    return WorkerOutcome.failed(f"{task.task_id} broke")


def test_breaker_blocks_content_after_three_consecutive_failures(store: TaskStore) -> None:
    for task_id in ("t1", "t2", "t3", "t4"):
        store.create(TaskCreate(task_id=task_id, title=task_id.upper()))
    worker = ScriptedWorker(default=_always_fail)
    scheduler = _scheduler(store, worker)

    reports = [scheduler.run_iteration() for _ in range(3)]
    assert [report.failed for report in reports] == [["t1"], ["t2"], ["t3"]]
    assert reports[-1].breaker_opened is True

    fourth = scheduler.run_iteration()

    assert fourth.idle
    assert fourth.idle_reason == IDLE_CIRCUIT_OPEN
    assert worker.calls == ["t1", "t2", "t3"]
    assert store.get("t4").status == TaskStatus.PENDING
    state = store.load_loop_state()
    assert state.breaker_open is True
    assert state.consecutive_failures == 3
    assert state.breaker_trips == 1
    assert state.failed_attempts == 3
    assert state.iteration_count == 4


def test_failed_tasks_are_never_retried_automatically(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1"))
    store.create(TaskCreate(task_id="t2", title="T2"))
    worker = ScriptedWorker({"t1": [WorkerOutcome.failed("bad draft")]})
    scheduler = _scheduler(store, worker)

    summary = scheduler.run_loop(max_iterations=5)

    assert worker.calls == ["t1", "t2"]
    assert store.get("t1").status == TaskStatus.FAILED
    assert summary.stop_reason == StopReason.IDLE_LIMIT


def test_open_breaker_still_dispatches_review_tasks(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1"))
    store.create(TaskCreate(task_id="audit", title="Audit", kind=TaskKind.REVIEW))
    store.save_loop_state(LoopState(consecutive_failures=3, breaker_open=True))
    worker = ScriptedWorker(default=_always_fail)
    scheduler = _scheduler(store, worker)

    report = scheduler.run_iteration()

    assert report.dispatched == ["audit"]
    state = store.load_loop_state()
    assert state.consecutive_failures == 3
    assert state.breaker_open is True


def test_operator_reset_resumes_content_dispatch(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1"))
    store.create(TaskCreate(task_id="t2", title="T2"))
    worker = ScriptedWorker({"t1": [WorkerOutcome.failed("nope")]})
    scheduler = _scheduler(store, worker, breaker_threshold=1)
    service = LoopService(store=store, breaker_threshold=1, review_period=0)

    scheduler.run_iteration()
    assert scheduler.run_iteration().idle_reason == IDLE_CIRCUIT_OPEN

    state = service.reset_breaker()
    assert state.breaker_open is False
    assert state.breaker_trips == 1

    assert scheduler.run_iteration().succeeded == ["t2"]


def test_review_sweep_runs_on_period_regardless_of_content(
    store: TaskStore,
    clock: FakeClock,
) -> None:
    for index in range(1, 9):
        store.create(TaskCreate(task_id=f"t{index:02d}", title=f"Task {index}"))
    worker = ScriptedWorker()
    scheduler = _scheduler(store, worker, review_period=6)

    first_five = [scheduler.run_iteration() for _ in range(5)]
    assert [report.kind for report in first_five] == [IterationKind.DISPATCH] * 5
    assert worker.calls == ["t01", "t02", "t03", "t04", "t05"]

    clock.advance(minutes=1)
    store.create(TaskCreate(task_id="hot", title="Urgent fix", priority=Priority.CRITICAL))

    sweep = scheduler.run_iteration()
    assert sweep.kind == IterationKind.REVIEW_SWEEP
    assert sweep.dispatched == [
        "review-0006-01-slop-checker",
        "review-0006-02-tech-accuracy",
    ]
    assert store.get("hot").status == TaskStatus.PENDING

    seventh = scheduler.run_iteration()
    assert seventh.kind == IterationKind.DISPATCH
    assert seventh.dispatched == ["hot"]


def test_review_findings_become_remediation_tasks(store: TaskStore) -> None:
    review_id = "review-0001-01-slop-checker"
    worker = ScriptedWorker(
        {
            review_id: [
                WorkerOutcome(
                    success=True,
                    findings=[
                        Finding(
                            file="chapters/ch03-retries.md",
                            line=42,
                            severity=Severity.HIGH,
                            description="Filler phrase in opening paragraph",
                        ),
                    ],
                ),
            ],
        },
    )
    scheduler = _scheduler(store, worker, review_period=1)

    report = scheduler.run_iteration()

    fix_id = f"{review_id}-fix-01"
    assert fix_id in report.created
    fix = store.get(fix_id)
    assert fix.kind == TaskKind.REMEDIATION
    assert fix.chapter == "ch03"
    assert fix.priority == Priority.HIGH
    assert fix.review_flagged is True
    assert fix.source_task_id == review_id
    assert fix.payload["agent"] == "slop-checker"
    assert fix.payload["line"] == 42


def test_review_failures_do_not_feed_the_breaker(store: TaskStore) -> None:
    worker = ScriptedWorker(default=_always_fail)
    scheduler = _scheduler(store, worker, review_period=1, breaker_threshold=1)

    report = scheduler.run_iteration()

    assert len(report.failed) == len(AGENTS)
    state = store.load_loop_state()
    assert state.consecutive_failures == 0
    assert state.breaker_open is False
    assert state.failed_attempts == len(AGENTS)


def test_milestones_progress_through_pipeline_until_complete(store: TaskStore) -> None:
    store.create(build_milestone_task("ch01", Milestone.DRAFT))
    worker = ScriptedWorker()
    scheduler = _scheduler(store, worker)

    summary = scheduler.run_loop(max_iterations=20)

    assert worker.calls == [
        "ch01-draft",
        "ch01-code_written",
        "ch01-code_tested",
        "ch01-reviewed",
        "ch01-diagrams_complete",
        "ch01-final",
    ]
    assert summary.stop_reason == StopReason.ALL_COMPLETE
    assert summary.iterations == 6
    state = store.load_loop_state()
    assert state.last_successful_task_id == "ch01-final"
    assert state.last_checkpoint_at is not None


def test_discovered_tasks_get_deterministic_ids(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1", chapter="ch02"))
    worker = ScriptedWorker(
        {"t1": [WorkerOutcome(success=True, new_tasks=[TaskCreate(title="Add sequence figure")])]},
    )
    scheduler = _scheduler(store, worker)

    report = scheduler.run_iteration()

    assert report.created == ["t1-discovered-01"]
    discovered = store.get("t1-discovered-01")
    assert discovered.source_task_id == "t1"
    assert discovered.status == TaskStatus.PENDING


def test_idle_iterations_do_not_touch_tasks(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1", depends_on=("ghost",)))
    worker = ScriptedWorker()
    scheduler = _scheduler(store, worker)
    before = store.list_tasks()
    events_before = store.get_task_details("t1").events

    first = scheduler.run_iteration()
    second = scheduler.run_iteration()

    assert first.idle_reason == IDLE_NO_ELIGIBLE_WORK
    assert second.idle_reason == IDLE_NO_ELIGIBLE_WORK
    assert first.dangling == ["t1"]
    assert store.list_tasks() == before
    assert store.get_task_details("t1").events == events_before
    assert worker.calls == []
    assert store.load_loop_state().iteration_count == 2


def test_run_loop_stops_after_idle_limit(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1", depends_on=("ghost",)))
    scheduler = _scheduler(store, ScriptedWorker())

    summary = scheduler.run_loop(max_iterations=10, max_idle_iterations=3)

    assert summary.stop_reason == StopReason.IDLE_LIMIT
    assert summary.iterations == 3
    assert summary.idle_iterations == 3


def test_run_loop_respects_iteration_limit(store: TaskStore) -> None:
    for index in range(1, 5):
        store.create(TaskCreate(task_id=f"t{index}", title=f"T{index}"))
    scheduler = _scheduler(store, ScriptedWorker())

    summary = scheduler.run_loop(max_iterations=2)

    assert summary.stop_reason == StopReason.ITERATION_LIMIT
    assert summary.succeeded == 2


def test_stop_request_ends_loop_before_next_iteration(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1"))
    store.create(TaskCreate(task_id="t2", title="T2"))

    class StoppingWorker(ScriptedWorker):
        def execute(self, task: TaskView, context: WorkerContext) -> WorkerOutcome:
            scheduler.request_stop()
            return super().execute(task, context)

    worker = StoppingWorker()
    scheduler = _scheduler(store, worker)

    summary = scheduler.run_loop(max_iterations=10)

    assert summary.stop_reason == StopReason.SIGNAL
    assert worker.calls == ["t1"]
    assert store.get("t1").status == TaskStatus.COMPLETE


def test_start_reconciles_interrupted_dispatch(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1"))
    store.promote(["t1"])
    store.claim("t1")
    worker = ScriptedWorker()
    scheduler = _scheduler(store, worker)

    assert scheduler.start() == ["t1"]
    report = scheduler.run_iteration()

    assert report.succeeded == ["t1"]
    details = store.get_task_details("t1")
    assert "reconciled" in [event.event_type for event in details.events]


def test_worker_exception_is_a_failed_outcome(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1"))

    def _explode(task: TaskView) -> WorkerOutcome:
        raise RuntimeError("agent binary vanished")

    scheduler = _scheduler(store, ScriptedWorker(default=_explode))

    report = scheduler.run_iteration()

    assert report.failed == ["t1"]
    assert store.get("t1").failure_reason == "Worker error: agent binary vanished"


def test_dispatch_order_is_deterministic(tmp_path: Path) -> None:
    def _run(name: str) -> list[str]:
        task_store = TaskStore(tmp_path / f"{name}.db", clock=FakeClock())
        task_store.init_schema()
        LoopService(store=task_store, breaker_threshold=3, review_period=4).seed_chapters(3)
        task_store.create(TaskCreate(task_id="glossary", title="Glossary", priority=Priority.LOW))
        worker = ScriptedWorker({"ch02-draft": [WorkerOutcome.failed("flaky")]})
        scheduler = Scheduler(
            store=task_store,
            worker=worker,
            review_period=4,
            review_agents=AGENTS,
        )
        scheduler.run_loop(max_iterations=12)
        task_store.close()
        return worker.calls

    first = _run("first")
    second = _run("second")

    assert first == second
    assert first[:3] == ["ch01-draft", "ch01-code_written", "ch02-draft"]


def test_snapshot_written_after_each_iteration(store: TaskStore, tmp_path: Path) -> None:
    store.create(TaskCreate(task_id="t1", title="T1"))
    snapshot_path = tmp_path / "out" / "tasks.json"
    scheduler = _scheduler(store, ScriptedWorker(), snapshot_path=snapshot_path)

    scheduler.run_iteration()

    document = json.loads(snapshot_path.read_text("utf-8"))
    assert document["version"] == 1
    assert document["tasks"][0]["status"] == "complete"
    assert document["checkpoints"]["iterationCount"] == 1
    assert document["checkpoints"]["lastSuccessfulTaskId"] == "t1"


def test_snapshot_write_failure_stops_the_scheduler(store: TaskStore, tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", "utf-8")
    store.create(TaskCreate(task_id="t1", title="T1"))
    scheduler = _scheduler(store, ScriptedWorker(), snapshot_path=blocker / "tasks.json")

    with pytest.raises(PersistenceError):
        scheduler.run_loop(max_iterations=3)
    assert store.get("t1").status == TaskStatus.COMPLETE


def test_review_sweep_skips_existing_review_id_and_dispatches_the_rest(
    store: TaskStore,
) -> None:
    store.create(
        TaskCreate(
            task_id="review-0001-02-tech-accuracy",
            title="Hand-made review",
            kind=TaskKind.REVIEW,
        ),
    )
    worker = ScriptedWorker()
    scheduler = _scheduler(store, worker, review_period=1)

    sweep = scheduler.run_iteration()

    assert sweep.kind == IterationKind.REVIEW_SWEEP
    assert sweep.created == ["review-0001-01-slop-checker"]
    assert sweep.dispatched == ["review-0001-01-slop-checker"]
    assert sweep.rejected == [("review-0001-02-tech-accuracy", "already exists")]
    assert store.get("review-0001-02-tech-accuracy").title == "Hand-made review"
    assert store.load_loop_state().iteration_count == 1


class RecordingHealthCheck:
    """Health check double that records the reasons it was run for."""

    def __init__(self, *, ok: bool = True) -> None:
        self.ok = ok
        self.reasons: list[str] = []

    def run(self, reason: str, *, shutdown_requested=None) -> HealthCheckResult:
        self.reasons.append(reason)
        return HealthCheckResult(reason=reason, ok=self.ok, exit_code=0 if self.ok else 1)


def test_health_check_runs_after_each_review_sweep(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1"))
    health = RecordingHealthCheck(ok=False)
    scheduler = Scheduler(
        store=store,
        worker=ScriptedWorker(),
        review_period=2,
        review_agents=AGENTS,
        health_check=health,
    )

    dispatch = scheduler.run_iteration()
    sweep = scheduler.run_iteration()

    assert dispatch.health is None
    assert sweep.health is not None
    assert sweep.health.ok is False
    assert health.reasons == [REASON_REVIEW_SWEEP]


def test_health_check_runs_once_when_all_tasks_complete(store: TaskStore) -> None:
    store.create(TaskCreate(task_id="t1", title="T1"))
    health = RecordingHealthCheck()
    scheduler = Scheduler(
        store=store,
        worker=ScriptedWorker(),
        review_period=0,
        review_agents=AGENTS,
        health_check=health,
    )

    summary = scheduler.run_loop(max_iterations=5)

    assert summary.stop_reason == StopReason.ALL_COMPLETE
    assert health.reasons == [REASON_ALL_COMPLETE]
    assert [result.reason for result in summary.health_checks] == [REASON_ALL_COMPLETE]
