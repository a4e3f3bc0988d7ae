from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest
from helpers import wait_until

from taskplane.config import CronSettings
from taskplane.cron.models import (
    AtSchedule,
    CronExprSchedule,
    CronJob,
    CronRuntime,
    EverySchedule,
    InlinePayload,
    RunStatus,
    TaskPayload,
)
from taskplane.cron.scheduler import CronScheduler
from taskplane.cron.store import CronStore
from taskplane.engine.notifications import GLOBAL_SCOPE, RecordingNotifier
from taskplane.tasks import SignalQueue, SignalType, TaskCreator, TaskRepository

pytestmark = [
    allure.epic("Cron"),
    allure.feature("Cron Scheduler"),
]

T0 = 1_700_000_000_000
AT = "2026-10-19T09:00:00Z"


class ManualClock:
    def __init__(self, now_ms: int) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture()
def jobs_root(tmp_path: Path) -> Path:
    return tmp_path / "cron-jobs"


@pytest.fixture()
def cron(
    cron_store: CronStore,
    repository: TaskRepository,
    signals: SignalQueue,
    notifier: RecordingNotifier,
    clock: ManualClock,
    jobs_root: Path,
) -> CronScheduler:
    return CronScheduler(
        store=cron_store,
        repository=repository,
        signals=signals,
        notifier=notifier,
        settings=CronSettings(jobs_root=jobs_root, poll_seconds=0.05, inline_timeout_seconds=5.0),
        clock=clock,
    )


def _inline_job(
    cron_store: CronStore,
    jobs_root: Path,
    script: str | None,
    *,
    schedule: AtSchedule | EverySchedule | None = None,
) -> CronJob:
    job = cron_store.add(
        name="housekeeping",
        schedule=schedule or EverySchedule(every_ms=60_000),
        runtime=CronRuntime.INLINE,
        payload=InlinePayload(description="cleanup"),
        now_ms=T0,
    )
    if script is not None:
        job_dir = jobs_root / job.job_id
        job_dir.mkdir(parents=True)
        (job_dir / "run.py").write_text(script, "utf-8")
    return job


def test_task_job_enqueues_task_and_signal_on_schedule(
    cron: CronScheduler,
    cron_store: CronStore,
    repository: TaskRepository,
    signals: SignalQueue,
    notifier: RecordingNotifier,
    clock: ManualClock,
) -> None:
    job = cron_store.add(
        name="digest",
        schedule=EverySchedule(every_ms=60_000),
        runtime=CronRuntime.TASK,
        payload=TaskPayload(title="Morning digest", description="Summarize overnight mail"),
        now_ms=T0,
    )

    assert asyncio.run(cron.poll()) == 0
    clock.now_ms = T0 + 60_000
    assert asyncio.run(cron.poll()) == 1
    assert asyncio.run(cron.poll()) == 0

    [task] = repository.list_tasks()
    assert task.title == "Morning digest"
    assert task.description == "Summarize overnight mail"
    assert task.created_by is TaskCreator.CRON
    [signal] = signals.pending()
    assert signal.signal_type is SignalType.TASK_ADDED
    assert signal.task_id == task.task_id
    assert notifier.for_scope(task.task_id) == ["cron 'digest' run #1 ok"]

    stored = cron_store.get(job.job_id)
    assert stored is not None
    assert stored.state.run_count == 1
    assert stored.state.last_task_id == task.task_id
    assert stored.state.next_run_at_ms == T0 + 120_000
    [run] = cron_store.list_runs(job.job_id)
    assert run.status is RunStatus.OK
    assert run.task_id == task.task_id
    assert not run.manual


def test_late_every_fire_stays_on_the_anchor_grid(
    cron: CronScheduler,
    cron_store: CronStore,
    clock: ManualClock,
) -> None:
    job = cron_store.add(
        name="digest",
        schedule=EverySchedule(every_ms=60_000),
        runtime=CronRuntime.TASK,
        payload=TaskPayload(title="Digest"),
        now_ms=T0,
    )
    clock.now_ms = T0 + 150_000

    assert asyncio.run(cron.poll()) == 1

    stored = cron_store.get(job.job_id)
    assert stored is not None
    assert stored.state.next_run_at_ms == T0 + 180_000


def test_at_job_fires_once_and_is_deleted(
    cron: CronScheduler,
    cron_store: CronStore,
    repository: TaskRepository,
    clock: ManualClock,
) -> None:
    job = cron_store.add(
        name="reminder",
        schedule=AtSchedule(at=AT),
        runtime=CronRuntime.TASK,
        payload=TaskPayload(title="Send reminder"),
    )
    clock.now_ms = AtSchedule(at=AT).at_ms + 1_000

    assert asyncio.run(cron.poll()) == 1
    assert asyncio.run(cron.poll()) == 0

    assert cron_store.get(job.job_id) is None
    assert [task.title for task in repository.list_tasks()] == ["Send reminder"]
    assert len(cron_store.list_runs(job.job_id)) == 1


def test_at_job_can_be_kept_after_running(
    cron: CronScheduler,
    cron_store: CronStore,
    clock: ManualClock,
) -> None:
    job = cron_store.add(
        name="reminder",
        schedule=AtSchedule(at=AT),
        runtime=CronRuntime.TASK,
        payload=TaskPayload(title="Send reminder"),
        delete_after_run=False,
    )
    clock.now_ms = AtSchedule(at=AT).at_ms

    assert asyncio.run(cron.poll()) == 1
    assert asyncio.run(cron.poll()) == 0

    stored = cron_store.get(job.job_id)
    assert stored is not None
    assert stored.state.run_count == 1


def test_failed_at_job_is_kept_and_not_retried(
    cron: CronScheduler,
    cron_store: CronStore,
    notifier: RecordingNotifier,
    clock: ManualClock,
    jobs_root: Path,
) -> None:
    job = _inline_job(cron_store, jobs_root, None, schedule=AtSchedule(at=AT))
    clock.now_ms = AtSchedule(at=AT).at_ms + 1

    assert asyncio.run(cron.poll()) == 1
    assert asyncio.run(cron.poll()) == 0

    stored = cron_store.get(job.job_id)
    assert stored is not None
    assert stored.state.last_status is RunStatus.ERROR
    expected_path = jobs_root / job.job_id / "run.py"
    assert notifier.for_scope(GLOBAL_SCOPE) == [
        f"cron 'housekeeping' run #1 failed: No script found at {expected_path}",
    ]


def test_inline_job_runs_script_in_its_folder(
    cron: CronScheduler,
    cron_store: CronStore,
    notifier: RecordingNotifier,
    jobs_root: Path,
) -> None:
    job = _inline_job(
        cron_store,
        jobs_root,
        "import pathlib, sys\n"
        "print('hello from', pathlib.Path.cwd().name)\n"
        "print('careful', file=sys.stderr)\n",
    )

    run = asyncio.run(cron.fire_now(job.job_id))

    assert run is not None
    assert run.status is RunStatus.OK
    assert run.manual
    assert run.output == f"hello from {job.job_id}\nstderr: careful"
    assert notifier.for_scope(GLOBAL_SCOPE) == [
        f"cron 'housekeeping' run #1 ok\nhello from {job.job_id}\nstderr: careful",
    ]


def test_inline_job_non_zero_exit_is_an_error(
    cron: CronScheduler,
    cron_store: CronStore,
    jobs_root: Path,
) -> None:
    job = _inline_job(
        cron_store,
        jobs_root,
        "import sys\nprint('partial')\nprint('disk full', file=sys.stderr)\nsys.exit(3)\n",
    )

    run = asyncio.run(cron.fire_now(job.job_id))

    assert run is not None
    assert run.status is RunStatus.ERROR
    assert run.error == "exit code 3: disk full"
    assert run.output == "partial\nstderr: disk full"


def test_inline_job_timeout(
    cron_store: CronStore,
    repository: TaskRepository,
    signals: SignalQueue,
    notifier: RecordingNotifier,
    jobs_root: Path,
) -> None:
    job = _inline_job(cron_store, jobs_root, "import time\ntime.sleep(30)\n")
    cron = CronScheduler(
        store=cron_store,
        repository=repository,
        signals=signals,
        notifier=notifier,
        settings=CronSettings(jobs_root=jobs_root, inline_timeout_seconds=0.5),
    )

    run = asyncio.run(cron.fire_now(job.job_id))

    assert run is not None
    assert run.status is RunStatus.ERROR
    assert run.error == "timed out after 0.5s"


def test_manual_fire_keeps_one_shot_job(
    cron: CronScheduler,
    cron_store: CronStore,
    repository: TaskRepository,
) -> None:
    job = cron_store.add(
        name="reminder",
        schedule=AtSchedule(at=AT),
        runtime=CronRuntime.TASK,
        payload=TaskPayload(title="Send reminder"),
    )

    run = asyncio.run(cron.fire_now(job.job_id[:8]))

    assert run is not None
    assert run.manual
    assert cron_store.get(job.job_id) is not None
    assert len(repository.list_tasks()) == 1
    assert asyncio.run(cron.fire_now("missing")) is None


def test_sync_timers_tracks_enabled_cron_jobs(
    cron: CronScheduler,
    cron_store: CronStore,
) -> None:
    daily = cron_store.add(
        name="daily",
        schedule=CronExprSchedule(expr="0 9 * * *", tz="UTC"),
        runtime=CronRuntime.TASK,
        payload=TaskPayload(title="Daily plan"),
    )
    cron_store.add(
        name="weekly",
        schedule=CronExprSchedule(expr="0 9 * * 1", tz="UTC"),
        runtime=CronRuntime.TASK,
        payload=TaskPayload(title="Weekly plan"),
        enabled=False,
    )
    cron_store.add(
        name="digest",
        schedule=EverySchedule(every_ms=60_000),
        runtime=CronRuntime.TASK,
        payload=TaskPayload(title="Digest"),
    )

    async def scenario() -> None:
        cron.sync_timers()
        assert cron.registered_job_ids == {daily.job_id}

        cron_store.update(daily.job_id, enabled=False)
        cron.sync_timers()
        assert cron.registered_job_ids == set()
        await cron.stop()

    asyncio.run(scenario())


def test_cron_timer_fires_at_the_next_match(
    cron: CronScheduler,
    cron_store: CronStore,
    repository: TaskRepository,
    clock: ManualClock,
) -> None:
    job = cron_store.add(
        name="minutely",
        schedule=CronExprSchedule(expr="* * * * *", tz="UTC"),
        runtime=CronRuntime.TASK,
        payload=TaskPayload(title="Tick"),
    )
    # 50ms before a minute boundary.
    clock.now_ms = (T0 // 60_000 + 1) * 60_000 - 50

    async def scenario() -> None:
        await cron.start()
        await wait_until(lambda: bool(repository.list_tasks()))
        await cron.stop()

    asyncio.run(scenario())

    stored = cron_store.get(job.job_id)
    assert stored is not None
    assert stored.state.run_count == 1
    assert [task.title for task in repository.list_tasks()] == ["Tick"]


def test_cron_timer_survives_a_disabled_fire_and_runs_after_re_enable(
    cron: CronScheduler,
    cron_store: CronStore,
    repository: TaskRepository,
    clock: ManualClock,
) -> None:
    job = cron_store.add(
        name="minutely",
        schedule=CronExprSchedule(expr="* * * * *", tz="UTC"),
        runtime=CronRuntime.TASK,
        payload=TaskPayload(title="Tick"),
    )
    first_boundary = (T0 // 60_000 + 1) * 60_000
    clock.now_ms = first_boundary - 50

    async def scenario() -> None:
        cron.sync_timers()
        await asyncio.sleep(0)
        cron_store.update(job.job_id, enabled=False)
        # The next match after the skipped one is 300ms away.
        clock.now_ms = first_boundary + 60_000 - 300
        await asyncio.sleep(0.15)
        assert repository.list_tasks() == []

        cron_store.update(job.job_id, enabled=True)
        cron.sync_timers()
        assert not cron._timers[job.job_id].task.done()
        await wait_until(lambda: bool(repository.list_tasks()))
        await cron.stop()

    asyncio.run(scenario())

    stored = cron_store.get(job.job_id)
    assert stored is not None
    assert stored.state.run_count == 1
    assert [task.title for task in repository.list_tasks()] == ["Tick"]
