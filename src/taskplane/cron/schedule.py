"""Schedule math for the three cron job kinds."""

from __future__ import annotations

from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from taskplane.cron.models import AtSchedule, CronJob, EverySchedule

CRON_FIELDS = 5


def next_every_run(*, anchor_ms: int, every_ms: int, now_ms: int) -> int:
    """Anchor plus the smallest whole number of intervals strictly after ``now_ms``."""

    if every_ms <= 0:
        raise ValueError("every_ms must be > 0")
    periods = (now_ms - anchor_ms) // every_ms
    return anchor_ms + (periods + 1) * every_ms


def at_due(job: CronJob, now_ms: int) -> bool:
    """A one-shot job is due once its time has passed and it has not fired for it yet."""

    if not isinstance(job.schedule, AtSchedule):
        return False
    at_ms = job.schedule.at_ms
    last_run = job.state.last_run_at_ms
    already_fired = last_run is not None and last_run >= at_ms
    return not already_fired and now_ms >= at_ms


def every_due(job: CronJob, now_ms: int) -> bool:
    if not isinstance(job.schedule, EverySchedule):
        return False
    next_run = job.state.next_run_at_ms
    return next_run is not None and now_ms >= next_run


def initial_every_run(job: CronJob, now_ms: int) -> int | None:
    """First ``next_run_at_ms`` for an every-job, anchored at creation when no anchor is set."""

    if not isinstance(job.schedule, EverySchedule):
        return None
    anchor = job.schedule.anchor_ms if job.schedule.anchor_ms is not None else now_ms
    return next_every_run(anchor_ms=anchor, every_ms=job.schedule.every_ms, now_ms=now_ms)


def resolve_timezone(tz: str | None) -> tzinfo:
    if not tz:
        local = datetime.now().astimezone().tzinfo
        if local is None:
            raise RuntimeError("Could not determine the local timezone.")
        return local
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as error:
        raise ValueError(f"Unknown timezone: {tz}") from error


def validate_cron_expr(expr: str) -> bool:
    if len(expr.split()) != CRON_FIELDS:
        return False
    return bool(croniter.is_valid(expr))


def next_cron_fire(expr: str, tz: str | None = None, *, after: datetime) -> datetime:
    """Next fire time of a 5-field expression, evaluated in ``tz``."""

    if not validate_cron_expr(expr):
        raise ValueError(f"Invalid cron expression: {expr!r}")
    base = after.astimezone(resolve_timezone(tz))
    return croniter(expr, base).get_next(datetime)
