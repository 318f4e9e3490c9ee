"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from manuscript_loop.orchestrator.errors import (
    CyclicDependencyError,
    DuplicateIdError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    TaskStoreError,
)
from manuscript_loop.orchestrator.lifecycle import (
    check_milestone_create,
    check_milestone_patch,
    check_status_transition,
    find_cycle,
    next_milestone_task,
    validate_task_shape,
)
from manuscript_loop.orchestrator.models import (
    LoopState,
    Milestone,
    OutcomeCommit,
    Priority,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskKind,
    TaskPatch,
    TaskStatus,
    TaskView,
)
from manuscript_loop.orchestrator.validation import blocking_issues
from manuscript_loop.storage.alembic_runner import upgrade_head
from manuscript_loop.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from manuscript_loop.storage.sqlmodel_models import (
    LOOP_STATE_ROW_ID,
    LoopStateRow,
    TaskEventRow,
    TaskRow,
)

logger = logging.getLogger(__name__)


class TaskStore:
    """Single source of truth for tasks, their events, and loop state.

    Every public call runs in its own session and either commits fully or leaves
    the database untouched.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure the loop state row exists."""

        upgrade_head(self.db_path)
        with Session(self.engine) as session:
            self._loop_state_row(session)
            self._commit(session)

    # Tasks

    def create(self, payload: TaskCreate) -> TaskView:
        """Create a pending task after duplicate, cycle, and milestone checks."""

        if payload.task_id is None:
            payload = replace(payload, task_id=str(uuid4()))
        with Session(self.engine) as session:
            row = self._insert_task(session, payload, event_details={"source": "create"})
            self._commit(session)
            session.refresh(row)
            return _to_task_view(row)

    def create_many(
        self,
        payloads: Sequence[TaskCreate],
        *,
        skip_existing: bool = False,
    ) -> tuple[list[TaskView], list[str]]:
        """Create several tasks in one transaction; all or nothing.

        With ``skip_existing`` an id that is already stored is left untouched and
        returned in the skipped list instead of failing the batch.
        """

        skipped: list[str] = []
        with Session(self.engine) as session:
            rows: list[TaskRow] = []
            for payload in payloads:
                if payload.task_id is None:
                    payload = replace(payload, task_id=str(uuid4()))
                if skip_existing and session.get(TaskRow, payload.task_id) is not None:
                    skipped.append(payload.task_id)
                    continue
                rows.append(
                    self._insert_task(session, payload, event_details={"source": "create"}),
                )
            self._commit(session)
            for row in rows:
                session.refresh(row)
            created = [_to_task_view(row) for row in rows]
        if skipped:
            logger.info("Skipped %d existing task(s): %s", len(skipped), ", ".join(skipped))
        return created, skipped

    def get(self, task_id: str) -> TaskView:
        with Session(self.engine) as session:
            return _to_task_view(self._get_row(session, task_id))

    def find(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            return _to_task_view(row) if row is not None else None

    def update(self, task_id: str, patch: TaskPatch) -> TaskView:  # noqa: C901, PLR0912
        """Apply a partial update.

        Status changes follow the task state machine; ``failed -> pending`` is
        recorded as a manual requeue and completing a milestone task creates the
        chapter's next milestone task in the same transaction.
        """

        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            current = _to_task_view(row)
            changes: dict[str, Any] = {}

            if patch.milestone is not None and patch.milestone is not current.milestone:
                check_milestone_patch(
                    current,
                    patch.milestone,
                    self._chapter_views(session, current.chapter),
                )
                changes["milestone"] = patch.milestone.value
            if patch.depends_on is not None:
                depends_on = tuple(sorted(set(patch.depends_on)))
                self._check_cycle(session, task_id, depends_on)
                changes["depends_on"] = list(depends_on)
                row.depends_on_json = _dump_depends_on(depends_on)
            if patch.title is not None:
                if not patch.title.strip():
                    raise ValueError("title is required")
                changes["title"] = patch.title
                row.title = patch.title
            if patch.description is not None:
                row.description = patch.description
                changes["description"] = True
            if patch.priority is not None:
                row.priority = patch.priority.value
                changes["priority"] = patch.priority.value
            if patch.score is not None:
                row.score = patch.score
                changes["score"] = patch.score
            if patch.review_flagged is not None:
                row.review_flagged = patch.review_flagged
                changes["review_flagged"] = patch.review_flagged
            if patch.failure_reason is not None:
                row.failure_reason = patch.failure_reason
                changes["failure_reason"] = patch.failure_reason
            if patch.payload is not None:
                row.payload_json = _dump_payload(patch.payload)
                changes["payload"] = True
            if "milestone" in changes:
                row.milestone = changes["milestone"]

            status_to: TaskStatus | None = None
            if patch.status is not None and patch.status is not current.status:
                check_status_transition(task_id, current.status, patch.status)
                status_to = patch.status
                row.status = status_to.value
                if status_to is TaskStatus.PENDING:
                    row.failure_reason = None

            if not changes and status_to is None:
                return current

            row.updated_at = to_db_datetime(self.clock())
            session.add(row)
            event_type = "updated"
            if current.status is TaskStatus.FAILED and status_to is TaskStatus.PENDING:
                event_type = "manual_requeue"
            elif status_to is TaskStatus.COMPLETE:
                event_type = "completed"
            elif status_to is TaskStatus.FAILED:
                event_type = "failed"
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=current.status if status_to is not None else None,
                status_to=status_to,
                details=changes,
            )
            if status_to is TaskStatus.COMPLETE:
                self._insert_follow_ups(
                    session,
                    parent_id=task_id,
                    follow_ups=_milestone_follow_up(_to_task_view(row)),
                )
            self._commit(session)
            session.refresh(row)
            return _to_task_view(row)

    def delete(self, task_id: str) -> None:
        """Delete a task and its events; dependents become dangling."""

        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            if row.status == TaskStatus.IN_PROGRESS.value:
                raise InvalidTransitionError(task_id, "cannot delete a task in progress")
            session.exec(sa_delete(TaskEventRow).where(col(TaskEventRow.task_id) == task_id))
            session.delete(row)
            self._commit(session)
        logger.info("Deleted task %s", task_id)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        chapter: str | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """List tasks oldest first, optionally filtered by status or chapter."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(
                col(TaskRow.created_at).asc(),
                col(TaskRow.task_id).asc(),
            )
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            if chapter is not None:
                statement = statement.where(TaskRow.chapter == chapter)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_by_status(self, status: TaskStatus) -> list[TaskView]:
        return self.list_tasks(status=status)

    def list_by_chapter(self, chapter: str) -> list[TaskView]:
        return self.list_tasks(chapter=chapter)

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.get(TaskRow, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=_to_task_view(task), events=events)

    # Scheduler transitions

    def requeue(self, task_id: str) -> TaskView:
        """Manual operator requeue for a failed task."""

        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            if row.status != TaskStatus.FAILED.value:
                raise InvalidTransitionError(
                    task_id,
                    f"only failed tasks can be requeued, got {row.status}",
                )
            previous_reason = row.failure_reason
            self._compare_and_set(
                session,
                task_id=task_id,
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.PENDING,
                values={"failure_reason": None},
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="manual_requeue",
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.PENDING,
                details={"previous_failure_reason": previous_reason},
            )
            self._commit(session)
            return _to_task_view(self._get_row(session, task_id))

    def promote(self, task_ids: Iterable[str]) -> list[TaskView]:
        """Move pending tasks whose dependencies are satisfied to eligible."""

        promoted: list[TaskView] = []
        with Session(self.engine) as session:
            for task_id in task_ids:
                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == task_id,
                        col(TaskRow.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.ELIGIBLE.value,
                        updated_at=to_db_datetime(self.clock()),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="promoted",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.ELIGIBLE,
                    details={},
                )
                promoted.append(_to_task_view(self._get_row(session, task_id)))
            self._commit(session)
        return promoted

    def update_scores(self, scores: Mapping[str, int]) -> None:
        """Persist freshly computed scores; not a state change, so no events."""

        with Session(self.engine) as session:
            for task_id, score in scores.items():
                session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == task_id,
                        col(TaskRow.score) != score,
                    )
                    .values(score=score),
                )
            self._commit(session)

    def claim(self, task_id: str, *, score: int | None = None) -> TaskView | None:
        """Atomically move one eligible task to in_progress.

        Returns ``None`` when the task is no longer eligible.
        """

        with Session(self.engine) as session:
            values: dict[str, Any] = {
                "status": TaskStatus.IN_PROGRESS.value,
                "updated_at": to_db_datetime(self.clock()),
            }
            if score is not None:
                values["score"] = score
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == TaskStatus.ELIGIBLE.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="claimed",
                status_from=TaskStatus.ELIGIBLE,
                status_to=TaskStatus.IN_PROGRESS,
                details={"score": score} if score is not None else {},
            )
            self._commit(session)
            return _to_task_view(self._get_row(session, task_id))

    def commit_outcome(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        success: bool,
        loop_state: LoopState,
        failure_reason: str | None = None,
        summary: str | None = None,
        follow_ups: Sequence[TaskCreate] = (),
    ) -> OutcomeCommit:
        """Record one dispatch outcome and all its consequences in one transaction.

        Follow-up tasks that fail validation are skipped and recorded on the
        parent task as ``follow_up_rejected`` events.
        """

        status_to = TaskStatus.COMPLETE if success else TaskStatus.FAILED
        with Session(self.engine) as session:
            self._compare_and_set(
                session,
                task_id=task_id,
                status_from=TaskStatus.IN_PROGRESS,
                status_to=status_to,
                values={"failure_reason": None if success else (failure_reason or "failed")},
            )
            details: dict[str, object] = {}
            if summary:
                details["summary"] = summary
            if not success:
                details["failure_reason"] = failure_reason or "failed"
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed" if success else "failed",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=status_to,
                details=details,
            )
            task = _to_task_view(self._get_row(session, task_id))
            planned: list[TaskCreate] = []
            if success:
                planned.extend(_milestone_follow_up(task))
                planned.extend(follow_ups)
            created, rejected = self._insert_follow_ups(
                session,
                parent_id=task_id,
                follow_ups=planned,
            )
            self._write_loop_state(session, loop_state)
            self._commit(session)
            return OutcomeCommit(
                task=_to_task_view(self._get_row(session, task_id)),
                created=[_to_task_view(row) for row in created],
                rejected=rejected,
            )

    def reconcile_interrupted(self) -> list[str]:
        """Return in_progress tasks left by a crashed run to pending."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(TaskRow.status == TaskStatus.IN_PROGRESS.value)
                .order_by(col(TaskRow.task_id).asc()),
            ).all()
            task_ids = [row.task_id for row in rows]
            for task_id in task_ids:
                self._compare_and_set(
                    session,
                    task_id=task_id,
                    status_from=TaskStatus.IN_PROGRESS,
                    status_to=TaskStatus.PENDING,
                    values={},
                )
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="reconciled",
                    status_from=TaskStatus.IN_PROGRESS,
                    status_to=TaskStatus.PENDING,
                    details={"reason": "interrupted dispatch"},
                )
            self._commit(session)
        for task_id in task_ids:
            logger.warning("Reconciled interrupted task %s back to pending", task_id)
        return task_ids

    # Loop state

    def load_loop_state(self) -> LoopState:
        with Session(self.engine) as session:
            row = session.get(LoopStateRow, LOOP_STATE_ROW_ID)
            if row is None:
                return LoopState()
            return _to_loop_state(row)

    def save_loop_state(self, state: LoopState) -> None:
        with Session(self.engine) as session:
            self._write_loop_state(session, state)
            self._commit(session)

    # Import

    def import_tasks(
        self,
        tasks: Sequence[TaskView],
        *,
        loop_state: LoopState | None = None,
    ) -> int:
        """Replace every stored task with ``tasks``; all or nothing.

        Duplicate ids, cycles, and milestone-order violations reject the whole
        import. Dangling dependencies are kept and reported by the resolver.
        """

        problems = blocking_issues(tasks)
        if problems:
            raise problems[0].error
        with Session(self.engine) as session:
            session.exec(sa_delete(TaskEventRow))
            session.exec(sa_delete(TaskRow))
            for task in tasks:
                session.add(_to_task_row(task))
            session.flush()
            for task in tasks:
                self._add_event(
                    session=session,
                    task_id=task.task_id,
                    event_type="imported",
                    status_from=None,
                    status_to=task.status,
                    details={},
                )
            if loop_state is not None:
                self._write_loop_state(session, loop_state)
            self._commit(session)
        logger.info("Imported %d tasks", len(tasks))
        return len(tasks)

    # Internals

    def _insert_task(
        self,
        session: Session,
        payload: TaskCreate,
        *,
        event_details: dict[str, object],
    ) -> TaskRow:
        validate_task_shape(payload)
        task_id = payload.task_id
        if task_id is None:
            raise ValueError("task_id is required")
        if session.get(TaskRow, task_id) is not None:
            raise DuplicateIdError(task_id)
        depends_on = tuple(sorted(set(payload.depends_on)))
        self._check_cycle(session, task_id, depends_on)
        if payload.chapter is not None:
            check_milestone_create(payload, self._chapter_views(session, payload.chapter))

        now = to_db_datetime(self.clock())
        row = TaskRow(
            task_id=task_id,
            kind=payload.kind.value,
            chapter=payload.chapter,
            milestone=payload.milestone.value if payload.milestone is not None else None,
            title=payload.title,
            description=payload.description,
            priority=payload.priority.value,
            score=0,
            status=TaskStatus.PENDING.value,
            depends_on_json=_dump_depends_on(depends_on),
            review_flagged=payload.review_flagged,
            source_task_id=payload.source_task_id,
            failure_reason=None,
            payload_json=_dump_payload(payload.payload),
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        self._add_event(
            session=session,
            task_id=task_id,
            event_type="created",
            status_from=None,
            status_to=TaskStatus.PENDING,
            details={
                "kind": payload.kind.value,
                "priority": payload.priority.value,
                "depends_on": list(depends_on),
                **event_details,
            },
        )
        return row

    def _insert_follow_ups(
        self,
        session: Session,
        *,
        parent_id: str,
        follow_ups: Sequence[TaskCreate],
    ) -> tuple[list[TaskRow], list[tuple[str, str]]]:
        created: list[TaskRow] = []
        rejected: list[tuple[str, str]] = []
        for payload in follow_ups:
            label = payload.task_id or payload.title
            try:
                row = self._insert_task(
                    session,
                    payload,
                    event_details={"source": "follow_up", "parent_task_id": parent_id},
                )
            except (TaskStoreError, ValueError) as error:
                rejected.append((label, str(error)))
                logger.warning("Rejected follow-up %s of %s: %s", label, parent_id, error)
                self._add_event(
                    session=session,
                    task_id=parent_id,
                    event_type="follow_up_rejected",
                    status_from=None,
                    status_to=None,
                    details={"task_id": label, "reason": str(error)},
                )
                continue
            created.append(row)
        return created, rejected

    def _check_cycle(self, session: Session, task_id: str, depends_on: Sequence[str]) -> None:
        if task_id in depends_on:
            raise CyclicDependencyError(task_id, [task_id, task_id])
        graph = {
            row.task_id: _load_depends_on(row.depends_on_json)
            for row in session.exec(select(TaskRow)).all()
        }
        cycle = find_cycle(task_id, depends_on, graph)
        if cycle is not None:
            raise CyclicDependencyError(task_id, cycle)

    def _chapter_views(self, session: Session, chapter: str | None) -> list[TaskView]:
        if chapter is None:
            return []
        rows = session.exec(select(TaskRow).where(TaskRow.chapter == chapter)).all()
        return [_to_task_view(row) for row in rows]

    def _compare_and_set(
        self,
        session: Session,
        *,
        task_id: str,
        status_from: TaskStatus,
        status_to: TaskStatus,
        values: dict[str, Any],
    ) -> None:
        result = session.exec(
            sa_update(TaskRow)
            .where(
                col(TaskRow.task_id) == task_id,
                col(TaskRow.status) == status_from.value,
            )
            .values(
                status=status_to.value,
                updated_at=to_db_datetime(self.clock()),
                **values,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            if session.get(TaskRow, task_id) is None:
                raise NotFoundError(task_id)
            raise InvalidTransitionError(
                task_id,
                f"expected {status_from.value} for {status_from.value} -> {status_to.value}",
            )

    def _get_row(self, session: Session, task_id: str) -> TaskRow:
        row = session.get(TaskRow, task_id)
        if row is None:
            raise NotFoundError(task_id)
        return row

    def _loop_state_row(self, session: Session) -> LoopStateRow:
        row = session.get(LoopStateRow, LOOP_STATE_ROW_ID)
        if row is None:
            row = LoopStateRow(
                id=LOOP_STATE_ROW_ID,
                updated_at=to_db_datetime(self.clock()),
            )
            session.add(row)
        return row

    def _write_loop_state(self, session: Session, state: LoopState) -> None:
        row = self._loop_state_row(session)
        row.iteration_count = state.iteration_count
        row.consecutive_failures = state.consecutive_failures
        row.breaker_open = state.breaker_open
        row.breaker_trips = state.breaker_trips
        row.failed_attempts = state.failed_attempts
        row.last_successful_task_id = state.last_successful_task_id
        row.last_checkpoint_at = (
            to_db_datetime(state.last_checkpoint_at)
            if state.last_checkpoint_at is not None
            else None
        )
        row.updated_at = to_db_datetime(self.clock())
        session.add(row)

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except SQLAlchemyError as error:
            session.rollback()
            raise PersistenceError(f"Task store commit failed: {error}") from error

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: Mapping[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(dict(details), ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self.clock()),
            ),
        )


def _milestone_follow_up(task: TaskView) -> list[TaskCreate]:
    following = next_milestone_task(task)
    return [following] if following is not None else []


def _dump_depends_on(depends_on: Iterable[str]) -> str:
    return json.dumps(sorted(set(depends_on)))


def _load_depends_on(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return ()
    return tuple(str(item) for item in parsed)


def _dump_payload(payload: Mapping[str, Any]) -> str | None:
    if not payload:
        return None
    return json.dumps(dict(payload), ensure_ascii=False, sort_keys=True)


def _load_payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        kind=TaskKind(row.kind),
        chapter=row.chapter,
        milestone=Milestone(row.milestone) if row.milestone is not None else None,
        title=row.title,
        description=row.description or "",
        priority=Priority(row.priority),
        score=row.score,
        status=TaskStatus(row.status),
        depends_on=_load_depends_on(row.depends_on_json),
        review_flagged=bool(row.review_flagged),
        source_task_id=row.source_task_id,
        failure_reason=row.failure_reason,
        payload=_load_payload(row.payload_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_row(task: TaskView) -> TaskRow:
    return TaskRow(
        task_id=task.task_id,
        kind=task.kind.value,
        chapter=task.chapter,
        milestone=task.milestone.value if task.milestone is not None else None,
        title=task.title,
        description=task.description,
        priority=task.priority.value,
        score=task.score,
        status=task.status.value,
        depends_on_json=_dump_depends_on(task.depends_on),
        review_flagged=task.review_flagged,
        source_task_id=task.source_task_id,
        failure_reason=task.failure_reason,
        payload_json=_dump_payload(task.payload),
        created_at=to_db_datetime(task.created_at),
        updated_at=to_db_datetime(task.updated_at),
    )


def _to_loop_state(row: LoopStateRow) -> LoopState:
    return LoopState(
        iteration_count=row.iteration_count,
        consecutive_failures=row.consecutive_failures,
        breaker_open=bool(row.breaker_open),
        breaker_trips=row.breaker_trips,
        failed_attempts=row.failed_attempts,
        last_successful_task_id=row.last_successful_task_id,
        last_checkpoint_at=(
            to_utc_aware_datetime(row.last_checkpoint_at)
            if row.last_checkpoint_at is not None
            else None
        ),
    )
