from __future__ import annotations

import asyncio
import queue
from pathlib import Path

import allure
from helpers import FakeAdapterFactory, make_task, wait_until

from taskplane.config import (
    CronSettings,
    RuntimeSettings,
    SandboxSettings,
    SchedulerSettings,
    Settings,
)
from taskplane.cron.store import CronStore
from taskplane.engine.control_plane import ControlPlane, build_adapter_factory
from taskplane.engine.notifications import GLOBAL_SCOPE, RecordingNotifier
from taskplane.runtime.base import AdapterHooks
from taskplane.runtime.local import InProcessAdapter
from taskplane.runtime.sandbox import SandboxAdapter
from taskplane.runtime.sessions import SessionStore
from taskplane.tasks import SignalQueue, TaskRepository, TaskStatus

pytestmark = [
    allure.epic("Control Plane"),
    allure.feature("Composition"),
]


def _settings(tmp_path: Path, *, mode: str = "local") -> Settings:
    return Settings(
        db_path=tmp_path / "taskplane.db",
        runtime=RuntimeSettings(
            mode=mode,
            world_root=tmp_path / "world",
            sessions_root=tmp_path / "sessions",
            workspace_root=tmp_path,
            executors=("aria",),
        ),
        sandbox=SandboxSettings(image="sandbox:test", final_snapshot_grace_seconds=1.0),
        scheduler=SchedulerSettings(tick_seconds=0.05, retry_base_seconds=0.001),
        cron=CronSettings(jobs_root=tmp_path / "cron", poll_seconds=0.05),
    )


class UnusedDocker:
    async def run_detached(self, **kwargs: object) -> str:
        raise AssertionError("docker must not be called")


def test_local_mode_builds_in_process_adapters(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    factory = build_adapter_factory(settings, sessions=SessionStore(tmp_path / "sessions"))

    adapter = factory(make_task(), AdapterHooks())

    assert isinstance(adapter, InProcessAdapter)
    assert adapter.world_root == tmp_path / "world"


def test_docker_mode_builds_sandbox_adapters(tmp_path: Path) -> None:
    settings = _settings(tmp_path, mode="docker")
    factory = build_adapter_factory(
        settings,
        sessions=SessionStore(tmp_path / "sessions"),
        docker=UnusedDocker(),  # type: ignore[arg-type]
    )

    adapter = factory(make_task(), AdapterHooks())

    assert isinstance(adapter, SandboxAdapter)
    assert adapter.config.image == "sandbox:test"
    assert adapter.config.final_snapshot_grace_seconds == 1.0
    assert adapter.workspace_root == tmp_path


def test_control_plane_runs_operator_task_to_completion(
    tmp_path: Path,
    repository: TaskRepository,
    signals: SignalQueue,
    cron_store: CronStore,
    notifier: RecordingNotifier,
    adapter_factory: FakeAdapterFactory,
) -> None:
    settings = _settings(tmp_path)
    plane = ControlPlane(
        settings=settings,
        repository=repository,
        signals=signals,
        cron_store=cron_store,
        notifier=notifier,
        adapter_factory=adapter_factory,
    )
    lines: queue.Queue[str] = queue.Queue()
    emitted: list[str] = []

    async def scenario() -> None:
        stop = asyncio.Event()
        run = asyncio.create_task(plane.run(stop, read_line=lines.get, emit=emitted.append))
        lines.put("/task Write release notes")
        await wait_until(lambda: bool(adapter_factory.adapters))
        [adapter] = adapter_factory.adapters.values()
        await wait_until(lambda: "start" in adapter.calls)
        adapter.complete()
        await wait_until(lambda: not plane.scheduler.runners)
        lines.put("/quit")
        lines.put("")
        await asyncio.wait_for(run, timeout=5)
        assert stop.is_set()

    asyncio.run(scenario())

    [task] = repository.list_tasks()
    assert task.status is TaskStatus.COMPLETED
    assert task.assignees == ["aria"]
    assert emitted == [f"Task queued: {task.short_id} Write release notes"]
    events = notifier.for_scope(task.task_id)
    assert events[0] == "queued: Write release notes"
    assert events[-1] == "completed"
    assert set(events) == {
        "queued: Write release notes",
        "assigned to aria",
        "started: Write release notes",
        "completed",
    }
    assert adapter_factory.adapters[task.task_id].calls == ["start", "release"]
    assert (tmp_path / "world").is_dir()


def test_control_plane_stops_on_event_without_console(
    tmp_path: Path,
    repository: TaskRepository,
    signals: SignalQueue,
    cron_store: CronStore,
    notifier: RecordingNotifier,
    adapter_factory: FakeAdapterFactory,
) -> None:
    plane = ControlPlane(
        settings=_settings(tmp_path),
        repository=repository,
        signals=signals,
        cron_store=cron_store,
        notifier=notifier,
        adapter_factory=adapter_factory,
    )

    async def scenario() -> None:
        stop = asyncio.Event()
        run = asyncio.create_task(plane.run(stop))
        await wait_until(lambda: plane.scheduler.state.ticks >= 2)
        stop.set()
        await asyncio.wait_for(run, timeout=5)

    asyncio.run(scenario())

    assert plane.scheduler.runners == {}
    assert notifier.for_scope(GLOBAL_SCOPE) == []


def test_shift_clock_moves_loop_through_rest_and_day_end(
    tmp_path: Path,
    repository: TaskRepository,
    signals: SignalQueue,
    cron_store: CronStore,
    notifier: RecordingNotifier,
    adapter_factory: FakeAdapterFactory,
) -> None:
    settings = _settings(tmp_path)
    settings.scheduler.shift_work_seconds = 0.05
    settings.scheduler.shift_rest_seconds = 0.1
    plane = ControlPlane(
        settings=settings,
        repository=repository,
        signals=signals,
        cron_store=cron_store,
        notifier=notifier,
        adapter_factory=adapter_factory,
    )

    async def scenario() -> None:
        stop = asyncio.Event()
        run = asyncio.create_task(plane.run(stop))
        await wait_until(lambda: "day ended" in notifier.for_scope(GLOBAL_SCOPE))
        stop.set()
        await asyncio.wait_for(run, timeout=5)

    asyncio.run(scenario())

    assert notifier.for_scope(GLOBAL_SCOPE)[:2] == ["rest period started", "day ended"]
