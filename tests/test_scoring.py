from __future__ import annotations

from datetime import timedelta

import allure
from conftest import START, make_task

from manuscript_loop.orchestrator.models import Milestone, Priority, TaskKind, TaskStatus
from manuscript_loop.orchestrator.scoring import (
    ScoreWeights,
    chapter_number,
    explain,
    rank,
    score,
)

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Scoring"),
]


def test_milestone_task_score_components() -> None:
    task = make_task(
        "ch03-draft",
        kind=TaskKind.MILESTONE,
        chapter="ch03",
        milestone=Milestone.DRAFT,
        priority=Priority.HIGH,
    )
    dependents = [
        make_task("ch03-figure", depends_on=("ch03-draft",)),
        make_task("ch03-sidebar", depends_on=("ch03-draft",)),
    ]

    breakdown = explain(task, [task, *dependents], now=START)

    assert breakdown.as_dict() == {
        "base": 0,
        "priority": 750,
        "kind": 100,
        "chapter": 85,
        "milestone": 55,
        "review_flagged": 0,
        "blocking": 50,
        "staleness": 0,
        "total": 1040,
    }


def test_staleness_bonus_steps_at_24_and_48_hours() -> None:
    task = make_task("old", priority=Priority.LOW)

    assert score(task, [task], now=START + timedelta(hours=23)) == 100
    assert score(task, [task], now=START + timedelta(hours=24)) == 150
    assert score(task, [task], now=START + timedelta(hours=48)) == 200


def test_review_flag_and_remediation_kind_bonus() -> None:
    task = make_task("fix", kind=TaskKind.REMEDIATION, review_flagged=True)

    assert score(task, [task], now=START) == 250 + 80 + 200


def test_review_tasks_outrank_any_content_task() -> None:
    review = make_task("review-0006-01-slop-checker", kind=TaskKind.REVIEW, priority=Priority.LOW)
    urgent = make_task(
        "ch01-draft",
        kind=TaskKind.MILESTONE,
        chapter="ch01",
        milestone=Milestone.DRAFT,
        priority=Priority.CRITICAL,
        review_flagged=True,
    )

    ranked = rank([urgent, review], [urgent, review], now=START)

    assert [task.task_id for task, _ in ranked] == [review.task_id, urgent.task_id]
    assert ranked[0][1] >= 1_000_000


def test_chapter_bonus_never_negative() -> None:
    late = make_task("late", chapter="ch25")

    assert explain(late, [late], now=START).chapter == 0
    assert chapter_number("ch07") == 7
    assert chapter_number("appendix") is None
    assert chapter_number(None) is None


def test_ties_break_by_created_at_then_id() -> None:
    older = make_task("b-older", created_at=START - timedelta(minutes=5))
    same_time_a = make_task("a-task")
    same_time_c = make_task("c-task")

    ranked = rank([same_time_c, older, same_time_a], [], now=START)

    assert [task.task_id for task, _ in ranked] == ["b-older", "a-task", "c-task"]


def test_blocking_bonus_ignores_completed_dependents() -> None:
    root = make_task("root")
    done = make_task("done", depends_on=("root",), status=TaskStatus.COMPLETE)

    assert explain(root, [root, done], now=START).blocking == 0


def test_custom_weights_change_ranking() -> None:
    weights = ScoreWeights(review_flagged=0, blocking_per_task=1000)
    flagged = make_task("flagged", review_flagged=True)
    blocker = make_task("blocker")
    waiting = make_task("waiting", depends_on=("blocker",))

    ranked = rank([flagged, blocker], [flagged, blocker, waiting], now=START, weights=weights)

    assert ranked[0][0].task_id == "blocker"
