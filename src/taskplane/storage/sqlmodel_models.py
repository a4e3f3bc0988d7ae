"""SQLModel ORM tables for the control-plane database."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text
from sqlmodel import Field, SQLModel


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: str = Field(index=True)
    created_by: str
    leader_id: str | None = None
    assignees_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    parent_id: str | None = Field(default=None, index=True)
    max_assignees: int | None = None
    dependencies_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    requires_plan_approval: bool = False
    revision_count: int = 0
    revision_note: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    sandbox_handle: str | None = None
    sandbox_artifact_ref: str | None = None
    external_thread_ref: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class TaskEventRecord(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]

    event_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SignalRecord(SQLModel, table=True):
    __tablename__ = "signals"  # type: ignore[bad-override]

    signal_id: int | None = Field(default=None, primary_key=True)
    signal_type: str = Field(index=True)
    payload_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    processed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class CronJobRecord(SQLModel, table=True):
    __tablename__ = "cron_jobs"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    enabled: bool = Field(default=True, index=True)
    schedule_kind: str = Field(index=True)
    job_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CronRunRecord(SQLModel, table=True):
    __tablename__ = "cron_runs"  # type: ignore[bad-override]

    run_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    job_name: str
    status: str = Field(index=True)
    task_id: str | None = None
    output: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    manual: bool = False
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
