"""Persistent task store for the photo pipeline state machine."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, not_, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from photo_pipeline.storage.alembic_runner import upgrade_head
from photo_pipeline.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from photo_pipeline.storage.sqlmodel_models import PhotoTask, PhotoTaskEvent
from photo_pipeline.tasks.errors import ConflictError, DuplicateError, NotFoundError
from photo_pipeline.tasks.models import (
    TERMINAL_STATUSES,
    TaskDetails,
    TaskEventView,
    TaskParams,
    TaskStatus,
    TaskView,
    validate_state_data_patch,
    validate_transition,
)


class TaskRepository:
    """Task persistence facade backed by SQLModel + SQLite.

    Every mutation is a single conditional UPDATE on ``status`` (and ``version``
    when supplied); a zero rowcount means another invocation got there first and
    surfaces as :class:`ConflictError` with nothing written.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create(self, params: TaskParams, *, task_id: str | None = None) -> TaskView:
        """Insert a new task in the initial state."""

        now = utc_now()
        task_id = task_id or str(uuid4())
        with Session(self.engine) as session:
            row = PhotoTask(
                task_id=task_id,
                status=TaskStatus.CREATED.value,
                params_json=_dump_json(params.to_dict()),
                state_data_json="{}",
                retry_count=0,
                version=1,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise DuplicateError(f"Task already exists: {task_id}") from error
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.CREATED,
                details={"images": len(params.images), "count": params.count},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get(self, task_id: str) -> TaskView:
        """Load one task or raise NotFoundError."""

        with Session(self.engine) as session:
            return _to_task_view(self._get_row(session=session, task_id=task_id))

    def commit_transition(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        new_status: TaskStatus,
        state_data_patch: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> TaskView:
        """Atomically move a task from `expected_status` to `new_status`."""

        validate_transition(expected_status, new_status)
        return self._conditional_write(
            task_id=task_id,
            expected_status=expected_status,
            expected_version=expected_version,
            state_data_patch=state_data_patch or {},
            values={
                "status": new_status.value,
                "error": None,
                "retry_after": None,
            },
            event_type="transitioned",
            status_to=new_status,
        )

    def annotate(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        expected_version: int,
        state_data_patch: dict[str, Any] | None = None,
    ) -> TaskView:
        """Conditional write that keeps the status, used to claim in-place."""

        return self._conditional_write(
            task_id=task_id,
            expected_status=expected_status,
            expected_version=expected_version,
            state_data_patch=state_data_patch or {},
            values={"error": None, "retry_after": None},
            event_type="annotated",
            status_to=expected_status,
        )

    def mark_handed_off(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        expected_version: int,
        invocation_id: str,
    ) -> TaskView:
        """Record that a worker invocation now owns the current stage."""

        now = utc_now()
        return self._conditional_write(
            task_id=task_id,
            expected_status=expected_status,
            expected_version=expected_version,
            state_data_patch={},
            values={
                "worker_invocation_id": invocation_id,
                "worker_dispatched_at": to_db_datetime(now),
                "error": None,
                "retry_after": None,
            },
            event_type="handed_off",
            status_to=expected_status,
            details={"invocation_id": invocation_id},
        )

    def record_failure(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        expected_version: int,
        error: str,
        retry_after: datetime | None,
        max_retries: int,
    ) -> TaskView:
        """Count one failed attempt; move to failed once the budget is spent."""

        with Session(self.engine) as session:
            row = self._get_row(session=session, task_id=task_id)
            retry_count = row.retry_count + 1
        exhausted = retry_count >= max_retries
        values: dict[str, Any] = {"retry_count": retry_count, "error": error}
        if exhausted:
            validate_transition(expected_status, TaskStatus.FAILED)
            values["status"] = TaskStatus.FAILED.value
            values["retry_after"] = None
        else:
            values["retry_after"] = to_db_datetime(retry_after) if retry_after else None
        return self._conditional_write(
            task_id=task_id,
            expected_status=expected_status,
            expected_version=expected_version,
            state_data_patch={},
            values=values,
            event_type="failed" if exhausted else "retry_scheduled",
            status_to=TaskStatus.FAILED if exhausted else expected_status,
            details={"retry_count": retry_count, "max_retries": max_retries, "error": error},
        )

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(PhotoTask).order_by(col(PhotoTask.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(PhotoTask.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_due_tasks(self, *, now: datetime, limit: int = 10) -> list[TaskView]:
        """Non-terminal tasks a dispatcher may act on at ``now``, oldest first.

        Tasks whose retry is not yet due are skipped, as are tasks waiting on a
        worker that has not reported back (their handlers would only stay).
        """

        awaiting_worker = or_(
            and_(
                col(PhotoTask.status) == TaskStatus.GENERATING.value,
                col(PhotoTask.error).is_(None),
            ),
            and_(
                col(PhotoTask.status) == TaskStatus.DOWNLOADED.value,
                col(PhotoTask.worker_invocation_id).is_not(None),
                col(PhotoTask.error).is_(None),
            ),
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(PhotoTask)
                .where(
                    col(PhotoTask.status).not_in([status.value for status in TERMINAL_STATUSES]),
                    or_(
                        col(PhotoTask.retry_after).is_(None),
                        col(PhotoTask.retry_after) <= to_db_datetime(now),
                    ),
                    not_(awaiting_worker),
                )
                .order_by(col(PhotoTask.created_at).asc(), col(PhotoTask.retry_count).asc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def count_by_status(self) -> dict[TaskStatus, int]:
        """Number of tasks per status; every status is present."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(PhotoTask.status, func.count()).group_by(PhotoTask.status),
            ).all()
        counts = dict.fromkeys(TaskStatus, 0)
        for status, total in rows:
            counts[TaskStatus(status)] = int(total)
        return counts

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(
                select(PhotoTask).where(PhotoTask.task_id == task_id),
            ).one_or_none()
            if task is None:
                return None

            event_rows = session.exec(
                select(PhotoTaskEvent)
                .where(PhotoTaskEvent.task_id == task_id)
                .order_by(col(PhotoTaskEvent.created_at).asc(), col(PhotoTaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
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

    def _conditional_write(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected_status: TaskStatus,
        expected_version: int | None,
        state_data_patch: dict[str, Any],
        values: dict[str, Any],
        event_type: str,
        status_to: TaskStatus,
        details: dict[str, object] | None = None,
    ) -> TaskView:
        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, task_id=task_id)
            if row.status != expected_status.value or (
                expected_version is not None and row.version != expected_version
            ):
                raise ConflictError(
                    task_id,
                    expected_status=expected_status.value,
                    expected_version=expected_version,
                )
            read_version = row.version
            state_data = _load_json(row.state_data_json)
            validate_state_data_patch(
                stage=expected_status,
                patch=state_data_patch,
                existing=state_data,
            )
            merged = {**state_data, **state_data_patch}

            result = session.exec(
                sa_update(PhotoTask)
                .where(
                    col(PhotoTask.task_id) == task_id,
                    col(PhotoTask.status) == expected_status.value,
                    col(PhotoTask.version) == read_version,
                )
                .values(
                    **values,
                    state_data_json=_dump_json(merged),
                    version=read_version + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    task_id,
                    expected_status=expected_status.value,
                    expected_version=expected_version,
                )

            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=expected_status,
                status_to=status_to,
                details={
                    **(details or {}),
                    "version": read_version + 1,
                    **({"state_data_keys": sorted(state_data_patch)} if state_data_patch else {}),
                },
            )
            session.commit()
            updated = session.exec(select(PhotoTask).where(PhotoTask.task_id == task_id)).one()
            session.refresh(updated)
            return _to_task_view(updated)

    def _get_row(self, *, session: Session, task_id: str) -> PhotoTask:
        row = session.exec(select(PhotoTask).where(PhotoTask.task_id == task_id)).one_or_none()
        if row is None:
            raise NotFoundError(task_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            PhotoTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _dump_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _load_json(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise TypeError("Stored JSON document must be an object")
    return parsed


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: PhotoTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        status=TaskStatus(row.status),
        params=TaskParams.from_dict(_load_json(row.params_json)),
        state_data=_load_json(row.state_data_json),
        retry_count=row.retry_count,
        error=row.error,
        retry_after=_optional_datetime(row.retry_after),
        worker_invocation_id=row.worker_invocation_id,
        worker_dispatched_at=_optional_datetime(row.worker_dispatched_at),
        version=row.version,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
