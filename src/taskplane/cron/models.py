"""Cron job model and its camelCase persisted form."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskplane.storage.common import from_iso, to_epoch_ms
from taskplane.tasks.models import TaskPriority


DEFAULT_INLINE_SCRIPT = "run.py"


class ScheduleKind(str, Enum):
    AT = "at"
    EVERY = "every"
    CRON = "cron"


class CronRuntime(str, Enum):
    """``inline`` runs a short script in the scheduler; ``task`` enqueues a task."""

    INLINE = "inline"
    TASK = "task"


class RunStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class AtSchedule:
    """One-shot ISO 8601 timestamp, UTC when no offset is given."""

    at: str
    kind: ScheduleKind = field(default=ScheduleKind.AT, init=False)

    @property
    def at_ms(self) -> int:
        return to_epoch_ms(from_iso(self.at))


@dataclass(frozen=True, slots=True)
class EverySchedule:
    every_ms: int
    anchor_ms: int | None = None
    kind: ScheduleKind = field(default=ScheduleKind.EVERY, init=False)


@dataclass(frozen=True, slots=True)
class CronExprSchedule:
    """Standard 5-field expression evaluated in ``tz`` (system local time when unset)."""

    expr: str
    tz: str | None = None
    kind: ScheduleKind = field(default=ScheduleKind.CRON, init=False)


Schedule = AtSchedule | EverySchedule | CronExprSchedule


@dataclass(frozen=True, slots=True)
class InlinePayload:
    """What the inline script does; the program itself lives in the job folder."""

    description: str = ""
    script: str = DEFAULT_INLINE_SCRIPT


@dataclass(frozen=True, slots=True)
class TaskPayload:
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL


Payload = InlinePayload | TaskPayload


@dataclass(slots=True)
class CronJobState:
    next_run_at_ms: int | None = None
    last_run_at_ms: int | None = None
    last_task_id: str | None = None
    last_status: RunStatus | None = None
    run_count: int = 0
    linked_thread_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"runCount": self.run_count}
        if self.next_run_at_ms is not None:
            payload["nextRunAtMs"] = self.next_run_at_ms
        if self.last_run_at_ms is not None:
            payload["lastRunAtMs"] = self.last_run_at_ms
        if self.last_task_id:
            payload["lastTaskId"] = self.last_task_id
        if self.last_status is not None:
            payload["lastStatus"] = self.last_status.value
        if self.linked_thread_ref:
            payload["linkedThreadRef"] = self.linked_thread_ref
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CronJobState:
        last_status = raw.get("lastStatus")
        return cls(
            next_run_at_ms=_optional_int(raw.get("nextRunAtMs")),
            last_run_at_ms=_optional_int(raw.get("lastRunAtMs")),
            last_task_id=raw.get("lastTaskId") or None,
            last_status=RunStatus(last_status) if last_status else None,
            run_count=int(raw.get("runCount") or 0),
            linked_thread_ref=raw.get("linkedThreadRef") or None,
        )


@dataclass(slots=True)
class CronJob:
    job_id: str
    name: str
    schedule: Schedule
    runtime: CronRuntime
    payload: Payload
    enabled: bool = True
    description: str | None = None
    delete_after_run: bool | None = None
    state: CronJobState = field(default_factory=CronJobState)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def short_id(self) -> str:
        return self.job_id[:8]

    @property
    def deletes_after_run(self) -> bool:
        """One-shot jobs are removed after a successful fire unless flagged to persist."""

        if self.schedule.kind is not ScheduleKind.AT:
            return False
        return self.delete_after_run is not False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.job_id,
            "name": self.name,
            "enabled": self.enabled,
            "runtime": self.runtime.value,
            "schedule": schedule_to_dict(self.schedule),
            "payload": payload_to_dict(self.payload),
            "state": self.state.to_dict(),
        }
        if self.description:
            payload["description"] = self.description
        if self.delete_after_run is not None:
            payload["deleteAfterRun"] = self.delete_after_run
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CronJob:
        runtime = CronRuntime(raw["runtime"])
        delete_after_run = raw.get("deleteAfterRun")
        return cls(
            job_id=str(raw["id"]),
            name=str(raw["name"]),
            schedule=schedule_from_dict(raw["schedule"]),
            runtime=runtime,
            payload=payload_from_dict(raw.get("payload") or {}, runtime=runtime),
            enabled=bool(raw.get("enabled", True)),
            description=raw.get("description") or None,
            delete_after_run=bool(delete_after_run) if delete_after_run is not None else None,
            state=CronJobState.from_dict(raw.get("state") or {}),
        )


@dataclass(slots=True)
class CronRun:
    """One entry of a job's run history."""

    run_id: int
    job_id: str
    job_name: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    task_id: str | None = None
    output: str | None = None
    error: str | None = None
    manual: bool = False


def schedule_to_dict(schedule: Schedule) -> dict[str, Any]:
    if isinstance(schedule, AtSchedule):
        return {"kind": "at", "at": schedule.at}
    if isinstance(schedule, EverySchedule):
        payload: dict[str, Any] = {"kind": "every", "everyMs": schedule.every_ms}
        if schedule.anchor_ms is not None:
            payload["anchorMs"] = schedule.anchor_ms
        return payload
    payload = {"kind": "cron", "expr": schedule.expr}
    if schedule.tz:
        payload["tz"] = schedule.tz
    return payload


def schedule_from_dict(raw: dict[str, Any]) -> Schedule:
    kind = ScheduleKind(raw.get("kind"))
    if kind is ScheduleKind.AT:
        return AtSchedule(at=str(raw["at"]))
    if kind is ScheduleKind.EVERY:
        every_ms = int(raw["everyMs"])
        if every_ms <= 0:
            raise ValueError("everyMs must be > 0")
        return EverySchedule(every_ms=every_ms, anchor_ms=_optional_int(raw.get("anchorMs")))
    return CronExprSchedule(expr=str(raw["expr"]), tz=raw.get("tz") or None)


def payload_to_dict(payload: Payload) -> dict[str, Any]:
    if isinstance(payload, TaskPayload):
        return {
            "title": payload.title,
            "description": payload.description,
            "priority": payload.priority.value,
        }
    payload_dict: dict[str, Any] = {"description": payload.description}
    if payload.script != DEFAULT_INLINE_SCRIPT:
        payload_dict["script"] = payload.script
    return payload_dict


def payload_from_dict(raw: dict[str, Any], *, runtime: CronRuntime) -> Payload:
    if runtime is CronRuntime.TASK:
        return TaskPayload(
            title=str(raw.get("title") or ""),
            description=str(raw.get("description") or ""),
            priority=TaskPriority(raw.get("priority") or TaskPriority.NORMAL.value),
        )
    return InlinePayload(
        description=str(raw.get("description") or ""),
        script=str(raw.get("script") or DEFAULT_INLINE_SCRIPT),
    )


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)  # type: ignore[arg-type]
