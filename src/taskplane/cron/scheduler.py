"""Cron scheduler: fires jobs on schedule, spawning tasks or running inline scripts.

* ``cron`` jobs get one asyncio timer each that sleeps until the next
  expression match; they are never polled.
* ``every`` and ``at`` jobs are checked by a short poll loop.
* A slower reconcile loop re-syncs the set of ``cron`` timers so jobs added,
  removed or toggled from another process are picked up without a restart.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass

from taskplane.config import CronSettings
from taskplane.cron.models import (
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
from taskplane.cron.schedule import (
    at_due,
    every_due,
    initial_every_run,
    next_cron_fire,
    next_every_run,
    validate_cron_expr,
)
from taskplane.cron.store import CronStore
from taskplane.engine.notifications import GLOBAL_SCOPE, Notifier
from taskplane.runtime.cli_collaborator import terminate_process
from taskplane.storage.common import from_epoch_ms, to_epoch_ms, utc_now, utc_now_ms
from taskplane.tasks.models import TaskCreate, TaskCreator
from taskplane.tasks.repository import TaskRepository
from taskplane.tasks.signals import SignalQueue, SignalType

logger = logging.getLogger(__name__)

_INTERPRETERS = {".py": [sys.executable], ".sh": ["sh"]}


@dataclass(slots=True)
class _FireOutcome:
    status: RunStatus
    task_id: str | None = None
    output: str | None = None
    error: str | None = None


@dataclass(slots=True)
class _Timer:
    expr: str
    tz: str | None
    task: asyncio.Task[None]


class CronScheduler:
    def __init__(  # noqa: PLR0913
        self,
        *,
        store: CronStore,
        repository: TaskRepository,
        signals: SignalQueue,
        notifier: Notifier,
        settings: CronSettings | None = None,
        clock: Callable[[], int] = utc_now_ms,
    ) -> None:
        self.store = store
        self.repository = repository
        self.signals = signals
        self.notifier = notifier
        self.settings = settings or CronSettings()
        self.clock = clock
        self._timers: dict[str, _Timer] = {}
        self._loops: list[asyncio.Task[None]] = []
        self._poll_busy = False

    @property
    def registered_job_ids(self) -> set[str]:
        return set(self._timers)

    async def start(self) -> None:
        jobs = self.store.list_jobs(enabled_only=True)
        now_ms = self.clock()
        for job in jobs:
            if job.schedule.kind is ScheduleKind.EVERY and job.state.next_run_at_ms is None:
                self.store.set_state(job.job_id, next_run_at_ms=initial_every_run(job, now_ms))
        self.sync_timers()
        loop = asyncio.get_running_loop()
        self._loops = [
            loop.create_task(self._poll_loop(), name="cron-poll"),
            loop.create_task(self._reconcile_loop(), name="cron-reconcile"),
        ]
        counts = {kind: 0 for kind in ScheduleKind}
        for job in jobs:
            counts[job.schedule.kind] += 1
        logger.info(
            "Cron scheduler started: %d cron, %d every, %d at job(s)",
            counts[ScheduleKind.CRON],
            counts[ScheduleKind.EVERY],
            counts[ScheduleKind.AT],
        )

    async def stop(self) -> None:
        tasks = [*self._loops, *(timer.task for timer in self._timers.values())]
        self._loops = []
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Cron scheduler stopped")

    def sync_timers(self) -> None:
        """Reconcile running ``cron`` timers with the enabled jobs in the store."""

        wanted: dict[str, CronExprSchedule] = {}
        for job in self.store.list_jobs(enabled_only=True):
            if not isinstance(job.schedule, CronExprSchedule):
                continue
            if not validate_cron_expr(job.schedule.expr):
                logger.warning(
                    "Invalid cron expression for job %r: %r, skipped",
                    job.name,
                    job.schedule.expr,
                )
                continue
            wanted[job.job_id] = job.schedule

        for job_id, timer in list(self._timers.items()):
            schedule = wanted.get(job_id)
            if (
                schedule is None
                or timer.task.done()
                or (schedule.expr, schedule.tz) != (timer.expr, timer.tz)
            ):
                timer.task.cancel()
                del self._timers[job_id]

        loop = asyncio.get_running_loop()
        for job_id, schedule in wanted.items():
            if job_id in self._timers:
                continue
            self._timers[job_id] = _Timer(
                expr=schedule.expr,
                tz=schedule.tz,
                task=loop.create_task(
                    self._cron_timer(job_id, schedule),
                    name=f"cron-timer:{job_id[:8]}",
                ),
            )

    async def poll(self) -> int:
        """Fire due ``every``/``at`` jobs once; returns how many fired."""

        if self._poll_busy:
            return 0
        self._poll_busy = True
        fired = 0
        try:
            now_ms = self.clock()
            for job in self.store.list_jobs(enabled_only=True):
                if job.schedule.kind is ScheduleKind.EVERY and job.state.next_run_at_ms is None:
                    self.store.set_state(
                        job.job_id,
                        next_run_at_ms=initial_every_run(job, now_ms),
                    )
                    continue
                if at_due(job, now_ms) or every_due(job, now_ms):
                    await self.fire(job)
                    fired += 1
        finally:
            self._poll_busy = False
        return fired

    async def fire_now(self, job_id: str) -> CronRun | None:
        """Fire a job immediately, regardless of its schedule or enabled flag."""

        job = self.store.get(job_id)
        if job is None:
            return None
        return await self.fire(job, manual=True)

    async def fire(self, job: CronJob, *, manual: bool = False) -> CronRun:
        started_at = utc_now()
        if job.runtime is CronRuntime.TASK:
            outcome = self._spawn_task(job)
        else:
            outcome = await self._run_inline(job)
        finished_at = utc_now()

        now_ms = self.clock()
        self.store.mark_fired(
            job.job_id,
            status=outcome.status,
            task_id=outcome.task_id,
            next_run_at_ms=self._next_run_after(job, now_ms),
            now_ms=now_ms,
        )
        run = self.store.record_run(
            job=job,
            status=outcome.status,
            started_at=started_at,
            finished_at=finished_at,
            task_id=outcome.task_id,
            output=outcome.output,
            error=outcome.error,
            manual=manual,
        )
        run_number = job.state.run_count + 1
        if outcome.status is RunStatus.OK:
            logger.info("Cron job %r fired (run #%d)", job.name, run_number)
            summary = f"cron {job.name!r} run #{run_number} ok"
            if outcome.output:
                summary += f"\n{outcome.output.strip()[:500]}"
        else:
            logger.error("Cron job %r failed (run #%d): %s", job.name, run_number, outcome.error)
            summary = f"cron {job.name!r} run #{run_number} failed: {outcome.error}"
        self.notifier.notify(outcome.task_id or GLOBAL_SCOPE, summary)

        if outcome.status is RunStatus.OK and job.deletes_after_run and not manual:
            self.store.remove(job.job_id)
        return run

    def _spawn_task(self, job: CronJob) -> _FireOutcome:
        payload = job.payload
        if not isinstance(payload, TaskPayload):
            return _FireOutcome(status=RunStatus.ERROR, error="job has no task payload")
        try:
            task = self.repository.enqueue(
                TaskCreate(
                    title=payload.title,
                    description=payload.description,
                    priority=payload.priority,
                    created_by=TaskCreator.CRON,
                    external_thread_ref=job.state.linked_thread_ref,
                ),
            )
            self.signals.append(SignalType.TASK_ADDED, {"taskId": task.task_id})
        except Exception as error:  # noqa: BLE001
            logger.exception("Cron job %r could not enqueue its task", job.name)
            return _FireOutcome(status=RunStatus.ERROR, error=f"{type(error).__name__}: {error}")
        return _FireOutcome(status=RunStatus.OK, task_id=task.task_id)

    async def _run_inline(self, job: CronJob) -> _FireOutcome:
        payload = job.payload
        script_name = payload.script if isinstance(payload, InlinePayload) else "run.py"
        job_dir = self.settings.jobs_root / job.job_id
        script = job_dir / script_name
        if not script.is_file():
            return _FireOutcome(status=RunStatus.ERROR, error=f"No script found at {script}")

        argv = [*_INTERPRETERS.get(script.suffix, []), str(script)]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(job_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            return _FireOutcome(status=RunStatus.ERROR, error=f"could not start {script}: {error}")
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.settings.inline_timeout_seconds,
            )
        except TimeoutError:
            await terminate_process(process)
            return _FireOutcome(
                status=RunStatus.ERROR,
                error=f"timed out after {self.settings.inline_timeout_seconds:g}s",
            )

        out = stdout.decode("utf-8", errors="replace").strip()
        err = stderr.decode("utf-8", errors="replace").strip()
        output = "\n".join(part for part in (out, f"stderr: {err}" if err else "") if part)
        if process.returncode != 0:
            return _FireOutcome(
                status=RunStatus.ERROR,
                output=output or None,
                error=f"exit code {process.returncode}" + (f": {err[-500:]}" if err else ""),
            )
        return _FireOutcome(status=RunStatus.OK, output=output or None)

    def _next_run_after(self, job: CronJob, now_ms: int) -> int | None:
        schedule = job.schedule
        if isinstance(schedule, EverySchedule):
            # Stay on the anchor grid so late fires never accumulate drift.
            anchor = schedule.anchor_ms
            if anchor is None:
                anchor = job.state.next_run_at_ms
            if anchor is None:
                anchor = now_ms
            return next_every_run(anchor_ms=anchor, every_ms=schedule.every_ms, now_ms=now_ms)
        if isinstance(schedule, CronExprSchedule):
            fire_at = next_cron_fire(schedule.expr, schedule.tz, after=from_epoch_ms(now_ms))
            return to_epoch_ms(fire_at)
        return None

    async def _cron_timer(self, job_id: str, schedule: CronExprSchedule) -> None:
        last_fire = from_epoch_ms(self.clock())
        while True:
            now = from_epoch_ms(self.clock())
            fire_at = next_cron_fire(schedule.expr, schedule.tz, after=max(now, last_fire))
            await asyncio.sleep(max(0.0, (fire_at - now).total_seconds()))
            last_fire = fire_at
            job = self.store.get(job_id)
            if job is None:
                return
            if not job.enabled:
                continue
            try:
                await self.fire(job)
            except Exception:
                logger.exception("Cron job %r failed to fire", job.name)

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.poll_seconds)
            try:
                await self.poll()
            except Exception:
                logger.exception("Cron poll failed")

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.reload_seconds)
            try:
                self.sync_timers()
            except Exception:
                logger.exception("Cron timer reconcile failed")

