"""Cron: persisted schedules that fire inline scripts or enqueue tasks."""

from taskplane.cron.models import (
    AtSchedule,
    CronExprSchedule,
    CronJob,
    CronRun,
    CronRuntime,
    EverySchedule,
    InlinePayload,
    RunStatus,
    ScheduleKind,
    TaskPayload,
)
from taskplane.cron.scheduler import CronScheduler
from taskplane.cron.store import CronStore

__all__ = [
    "AtSchedule",
    "CronExprSchedule",
    "CronJob",
    "CronRun",
    "CronRuntime",
    "CronScheduler",
    "CronStore",
    "EverySchedule",
    "InlinePayload",
    "RunStatus",
    "ScheduleKind",
    "TaskPayload",
]
