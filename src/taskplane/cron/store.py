"""Persistent cron job store and run history."""

from __future__ import annotations

import dataclasses
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from taskplane.cron.models import (
    AtSchedule,
    CronExprSchedule,
    CronJob,
    CronJobState,
    CronRun,
    CronRuntime,
    InlinePayload,
    Payload,
    RunStatus,
    Schedule,
    TaskPayload,
)
from taskplane.cron.schedule import initial_every_run, resolve_timezone, validate_cron_expr
from taskplane.storage.alembic_runner import upgrade_head
from taskplane.storage.common import (
    build_sqlite_engine,
    from_iso,
    to_db_datetime,
    to_utc_aware,
    utc_now,
    utc_now_ms,
)
from taskplane.storage.sqlmodel_models import CronJobRecord, CronRunRecord

logger = logging.getLogger(__name__)

OUTPUT_MAX_CHARS = 8_000


class CronStore:
    """One durable record per job, keyed by job id, plus a ``cron_runs`` history."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def add(  # noqa: PLR0913
        self,
        *,
        name: str,
        schedule: Schedule,
        runtime: CronRuntime,
        payload: Payload,
        enabled: bool = True,
        description: str | None = None,
        delete_after_run: bool | None = None,
        now_ms: int | None = None,
    ) -> CronJob:
        """Create a job; ``every`` jobs get their first ``next_run_at_ms`` right away."""

        _validate(schedule=schedule, runtime=runtime, payload=payload)
        job = CronJob(
            job_id=str(uuid4()),
            name=name,
            schedule=schedule,
            runtime=runtime,
            payload=payload,
            enabled=enabled,
            description=description,
            delete_after_run=delete_after_run,
        )
        first_ms = now_ms if now_ms is not None else utc_now_ms()
        job.state.next_run_at_ms = initial_every_run(job, first_ms)
        now = utc_now()
        with Session(self.engine) as session:
            session.add(
                CronJobRecord(
                    job_id=job.job_id,
                    name=job.name,
                    enabled=job.enabled,
                    schedule_kind=job.schedule.kind.value,
                    job_json=_dump_job(job),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
        logger.info("Cron job added: %s %r (%s)", job.short_id, job.name, job.schedule.kind.value)
        return self.get(job.job_id) or job

    def get(self, job_id: str) -> CronJob | None:
        """Look a job up by id or unique id prefix."""

        with Session(self.engine) as session:
            row = session.get(CronJobRecord, job_id)
            if row is None and job_id:
                matches = session.exec(
                    select(CronJobRecord)
                    .where(col(CronJobRecord.job_id).startswith(job_id))
                    .limit(2),
                ).all()
                row = matches[0] if len(matches) == 1 else None
            return _to_job(row) if row is not None else None

    def list_jobs(self, *, enabled_only: bool = False) -> list[CronJob]:
        with Session(self.engine) as session:
            statement = select(CronJobRecord).order_by(col(CronJobRecord.created_at).asc())
            if enabled_only:
                statement = statement.where(col(CronJobRecord.enabled).is_(True))
            rows = session.exec(statement).all()
            return [_to_job(row) for row in rows]

    def update(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        name: str | None = None,
        enabled: bool | None = None,
        schedule: Schedule | None = None,
        payload: Payload | None = None,
        description: str | None = None,
        delete_after_run: bool | None = None,
    ) -> CronJob | None:
        """Apply a partial update; a new ``every`` schedule restarts its interval grid."""

        job = self.get(job_id)
        if job is None:
            return None
        if name is not None:
            job.name = name
        if enabled is not None:
            job.enabled = enabled
        if description is not None:
            job.description = description
        if delete_after_run is not None:
            job.delete_after_run = delete_after_run
        if payload is not None:
            job.payload = payload
        if schedule is not None:
            job.schedule = schedule
            job.state.next_run_at_ms = initial_every_run(job, utc_now_ms())
        _validate(schedule=job.schedule, runtime=job.runtime, payload=job.payload)
        self._write(job)
        return self.get(job.job_id)

    def remove(self, job_id: str) -> bool:
        job = self.get(job_id)
        if job is None:
            return False
        with Session(self.engine) as session:
            session.exec(sa_delete(CronJobRecord).where(col(CronJobRecord.job_id) == job.job_id))
            session.commit()
        logger.info("Cron job removed: %s %r", job.short_id, job.name)
        return True

    def set_state(self, job_id: str, **changes: Any) -> CronJob | None:
        """Merge state fields (``next_run_at_ms=...``) into the stored job."""

        job = self.get(job_id)
        if job is None:
            return None
        job.state = dataclasses.replace(job.state, **changes)
        self._write(job)
        return job

    def mark_fired(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        status: RunStatus,
        task_id: str | None = None,
        next_run_at_ms: int | None = None,
        now_ms: int | None = None,
    ) -> CronJob | None:
        """Record a fire: ``last_run_at_ms`` is always stamped so a one-shot never re-fires."""

        job = self.get(job_id)
        if job is None:
            return None
        job.state = CronJobState(
            next_run_at_ms=next_run_at_ms
            if next_run_at_ms is not None
            else job.state.next_run_at_ms,
            last_run_at_ms=now_ms if now_ms is not None else utc_now_ms(),
            last_task_id=task_id,
            last_status=status,
            run_count=job.state.run_count + 1,
            linked_thread_ref=job.state.linked_thread_ref,
        )
        self._write(job)
        return job

    def set_linked_thread(self, job_id: str, ref: str) -> CronJob | None:
        return self.set_state(job_id, linked_thread_ref=ref)

    def record_run(  # noqa: PLR0913
        self,
        *,
        job: CronJob,
        status: RunStatus,
        started_at: datetime,
        finished_at: datetime,
        task_id: str | None = None,
        output: str | None = None,
        error: str | None = None,
        manual: bool = False,
    ) -> CronRun:
        with Session(self.engine) as session:
            row = CronRunRecord(
                job_id=job.job_id,
                job_name=job.name,
                status=status.value,
                task_id=task_id,
                output=output[-OUTPUT_MAX_CHARS:] if output else None,
                error=error[-OUTPUT_MAX_CHARS:] if error else None,
                manual=manual,
                started_at=to_db_datetime(started_at),
                finished_at=to_db_datetime(finished_at),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run(row)

    def list_runs(self, job_id: str | None = None, *, limit: int = 20) -> list[CronRun]:
        """Run history, newest first."""

        with Session(self.engine) as session:
            statement = (
                select(CronRunRecord).order_by(col(CronRunRecord.run_id).desc()).limit(limit)
            )
            if job_id is not None:
                statement = statement.where(CronRunRecord.job_id == job_id)
            rows = session.exec(statement).all()
            return [_to_run(row) for row in rows]

    def _write(self, job: CronJob) -> None:
        with Session(self.engine) as session:
            row = session.get(CronJobRecord, job.job_id)
            if row is None:
                return
            row.name = job.name
            row.enabled = job.enabled
            row.schedule_kind = job.schedule.kind.value
            row.job_json = _dump_job(job)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()


def _validate(*, schedule: Schedule, runtime: CronRuntime, payload: Payload) -> None:
    if isinstance(schedule, CronExprSchedule):
        if not validate_cron_expr(schedule.expr):
            raise ValueError(f"Invalid cron expression: {schedule.expr!r}")
        resolve_timezone(schedule.tz)
    elif isinstance(schedule, AtSchedule):
        from_iso(schedule.at)
    if runtime is CronRuntime.TASK:
        if not isinstance(payload, TaskPayload):
            raise ValueError("task runtime jobs need a task payload")
        if not payload.title.strip():
            raise ValueError("task payload title must not be empty")
    elif not isinstance(payload, InlinePayload):
        raise ValueError("inline runtime jobs need an inline payload")


def _dump_job(job: CronJob) -> str:
    return json.dumps(job.to_dict(), ensure_ascii=False, sort_keys=True)


def _to_job(row: CronJobRecord) -> CronJob:
    job = CronJob.from_dict(json.loads(row.job_json))
    job.enabled = row.enabled
    job.created_at = to_utc_aware(row.created_at)
    job.updated_at = to_utc_aware(row.updated_at)
    return job


def _to_run(row: CronRunRecord) -> CronRun:
    return CronRun(
        run_id=row.run_id or 0,
        job_id=row.job_id,
        job_name=row.job_name,
        status=RunStatus(row.status),
        started_at=to_utc_aware(row.started_at),
        finished_at=to_utc_aware(row.finished_at),
        task_id=row.task_id,
        output=row.output,
        error=row.error,
        manual=row.manual,
    )
