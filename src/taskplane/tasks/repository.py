"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskplane.storage.alembic_runner import upgrade_head
from taskplane.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from taskplane.storage.sqlmodel_models import TaskEventRecord, TaskRecord
from taskplane.tasks.models import (
    REVISABLE_STATUSES,
    TERMINAL_STATUSES,
    TaskCreate,
    TaskCreator,
    TaskEventView,
    TaskPriority,
    TaskStatus,
    TaskView,
)

logger = logging.getLogger(__name__)

_BUSY_STATUSES = (TaskStatus.ASSIGNED.value, TaskStatus.IN_PROGRESS.value)


class TaskNotFoundError(RuntimeError):
    """Raised by operator-facing lookups when a task id does not resolve."""


class TaskRepository:
    """Task store facade: the single source of truth for task state.

    Every mutation is a read-modify-write guarded by the status it read, and
    records an audit row in ``task_events``.
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

    def enqueue(self, payload: TaskCreate) -> TaskView:
        """Create a task in ``pending`` status."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = TaskRecord(
                task_id=task_id,
                title=payload.title,
                description=payload.description,
                status=TaskStatus.PENDING.value,
                priority=TaskPriority(payload.priority).value,
                created_by=TaskCreator(payload.created_by).value,
                parent_id=payload.parent_id,
                max_assignees=payload.max_assignees,
                dependencies_json=_dump_list(list(payload.dependencies)),
                requires_plan_approval=payload.requires_plan_approval,
                external_thread_ref=payload.external_thread_ref,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "title": payload.title,
                    "priority": TaskPriority(payload.priority).value,
                    "created_by": TaskCreator(payload.created_by).value,
                },
            )
            session.commit()
            session.refresh(row)
            view = _to_task_view(row)
        logger.info("Task enqueued: %s %r", view.short_id, view.title)
        return view

    def get(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            return _to_task_view(row) if row is not None else None

    def require(self, task_id: str) -> TaskView:
        """Resolve a full or short task id, raising for operator-facing commands."""

        resolved = self.resolve_id(task_id)
        task = self.get(resolved) if resolved is not None else None
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def resolve_id(self, prefix: str) -> str | None:
        """Resolve a task id from its unique prefix (operators type 8-char ids)."""

        prefix = prefix.strip()
        if not prefix:
            return None
        with Session(self.engine) as session:
            exact = session.get(TaskRecord, prefix)
            if exact is not None:
                return exact.task_id
            matches = session.exec(
                select(TaskRecord.task_id)
                .where(col(TaskRecord.task_id).startswith(prefix))
                .limit(2),
            ).all()
        if len(matches) != 1:
            return None
        return matches[0]

    def list_by_status(self, status: TaskStatus) -> list[TaskView]:
        """Tasks in one status, most urgent and oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(TaskRecord.status == TaskStatus(status).value)
                .order_by(col(TaskRecord.created_at).asc()),
            ).all()
            views = [_to_task_view(row) for row in rows]
        return sorted(views, key=lambda task: task.priority.rank)

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TaskRecord).order_by(col(TaskRecord.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskRecord.status == status.value)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def summary(self) -> dict[TaskStatus, int]:
        """Task counts per status."""

        with Session(self.engine) as session:
            statuses = session.exec(select(TaskRecord.status)).all()
        counts = Counter(TaskStatus(value) for value in statuses)
        return {status: counts.get(status, 0) for status in TaskStatus}

    def busy_assignees(self) -> set[str]:
        """Actors holding an assigned or in-progress task (one task per actor at a time)."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord).where(col(TaskRecord.status).in_(_BUSY_STATUSES)),
            ).all()
            busy: set[str] = set()
            for row in rows:
                busy.update(_load_list(row.assignees_json))
                if row.leader_id:
                    busy.add(row.leader_id)
        return busy

    def update_status(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        status: TaskStatus,
        assignees: list[str] | str | None = None,
        leader_id: str | None = None,
        error_summary: str | None = None,
        event_type: str = "status_changed",
        failure_details: dict[str, object] | None = None,
    ) -> bool:
        """Rewrite status and touch ``updated_at``.

        ``completed_at`` is set only when entering ``completed``. Terminal tasks
        are left untouched; they move again only through :meth:`revise_task`.
        """

        status = TaskStatus(status)
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                return False
            previous = TaskStatus(row.status)
            if previous in TERMINAL_STATUSES:
                logger.warning(
                    "Ignoring status change %s -> %s for terminal task %s",
                    previous.value,
                    status.value,
                    task_id[:8],
                )
                return False

            values: dict[str, Any] = {
                "status": status.value,
                "updated_at": to_db_datetime(now),
            }
            if status is TaskStatus.COMPLETED:
                values["completed_at"] = to_db_datetime(now)
            if assignees is not None:
                values["assignees_json"] = _dump_list(_normalize_assignees(assignees))
            if leader_id is not None:
                values["leader_id"] = leader_id
            if error_summary is not None:
                values["error_summary"] = error_summary

            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.task_id) == task_id,
                    col(TaskRecord.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            details: dict[str, object] = {}
            if assignees is not None:
                details["assignees"] = _normalize_assignees(assignees)
            if error_summary:
                details["error_summary"] = error_summary
            if failure_details:
                details.update(failure_details)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous,
                status_to=status,
                details=details,
            )
            session.commit()
        return True

    def assign(self, *, task_id: str, assignees: list[str], leader_id: str | None = None) -> bool:
        """Collaborator write path: mark a pending task ``assigned`` to executors."""

        if not assignees:
            raise ValueError("At least one assignee is required.")
        task = self.get(task_id)
        if task is None or task.status is not TaskStatus.PENDING:
            return False
        return self.update_status(
            task_id=task_id,
            status=TaskStatus.ASSIGNED,
            assignees=assignees,
            leader_id=leader_id or assignees[0],
            event_type="assigned",
        )

    def revise_task(
        self,
        *,
        task_id: str,
        feedback: str,
        runner_active: bool = False,
    ) -> TaskView | None:
        """Re-run a finished task on the same id with operator feedback.

        Legal only from ``completed``/``failed`` and only while no runner is
        active for the task; otherwise nothing is mutated and ``None`` is returned.
        """

        if runner_active:
            return None
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                return None
            previous = TaskStatus(row.status)
            if previous not in REVISABLE_STATUSES:
                return None

            next_revision = row.revision_count + 1
            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.task_id) == task_id,
                    col(TaskRecord.status) == previous.value,
                )
                .values(
                    status=TaskStatus.ASSIGNED.value,
                    revision_count=next_revision,
                    revision_note=feedback,
                    completed_at=None,
                    error_summary=None,
                    sandbox_handle=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            self._add_event(
                session=session,
                task_id=task_id,
                event_type="revised",
                status_from=previous,
                status_to=TaskStatus.ASSIGNED,
                details={"revision": next_revision, "feedback": feedback},
            )
            session.commit()
        return self.get(task_id)

    def set_sandbox_handle(self, *, task_id: str, handle: str | None) -> None:
        self._set_field(task_id=task_id, field_name="sandbox_handle", value=handle)

    def set_artifact_ref(self, *, task_id: str, ref: str) -> None:
        self._set_field(task_id=task_id, field_name="sandbox_artifact_ref", value=ref)

    def set_external_thread_ref(self, *, task_id: str, ref: str) -> None:
        self._set_field(task_id=task_id, field_name="external_thread_ref", value=ref)

    def list_events(self, *, task_id: str) -> list[TaskEventView]:
        """Audit trail for one task, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRecord)
                .where(TaskEventRecord.task_id == task_id)
                .order_by(col(TaskEventRecord.event_id).asc()),
            ).all()
            return [
                TaskEventView(
                    event_id=row.event_id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    details=json.loads(row.details_json) if row.details_json else {},
                    created_at=to_utc_aware(row.created_at),
                )
                for row in rows
            ]

    def _set_field(self, *, task_id: str, field_name: str, value: str | None) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRecord)
                .where(col(TaskRecord.task_id) == task_id)
                .values({field_name: value, "updated_at": to_db_datetime(utc_now())}),
            )
            if result.rowcount != 1:
                session.rollback()
                return
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=f"{field_name}_set",
                status_from=None,
                status_to=None,
                details={field_name: value},
            )
            session.commit()

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
            TaskEventRecord(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _normalize_assignees(assignees: list[str] | str) -> list[str]:
    if isinstance(assignees, str):
        return [assignees]
    return [name for name in assignees if name]


def _dump_list(values: list[str]) -> str | None:
    if not values:
        return None
    return json.dumps(values, ensure_ascii=False)


def _load_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    payload = json.loads(raw)
    if not isinstance(payload, list):
        return []
    return [str(item) for item in payload]


def _to_task_view(row: TaskRecord) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        priority=TaskPriority(row.priority),
        created_by=TaskCreator(row.created_by),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        completed_at=to_utc_aware(row.completed_at) if row.completed_at is not None else None,
        leader_id=row.leader_id,
        assignees=_load_list(row.assignees_json),
        parent_id=row.parent_id,
        max_assignees=row.max_assignees,
        dependencies=_load_list(row.dependencies_json),
        requires_plan_approval=row.requires_plan_approval,
        revision_count=row.revision_count,
        revision_note=row.revision_note,
        sandbox_handle=row.sandbox_handle,
        sandbox_artifact_ref=row.sandbox_artifact_ref,
        external_thread_ref=row.external_thread_ref,
        error_summary=row.error_summary,
    )
