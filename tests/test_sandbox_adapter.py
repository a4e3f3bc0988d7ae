from __future__ import annotations

import asyncio
from pathlib import Path
from urllib.parse import unquote

import allure
import pytest
from helpers import make_task, wait_until

from taskplane.runtime.base import AdapterHooks, AdapterStartError, AdapterState, ExecutionError
from taskplane.runtime.docker import DockerCommandError, Mount
from taskplane.runtime.sandbox import (
    ENTRYPOINT_SCRIPT,
    SandboxAdapter,
    SandboxConfig,
    build_mounts,
    container_name,
    evaluate_exit,
)
from taskplane.runtime.sessions import SessionStore
from taskplane.runtime.sync import ProgressSnapshot, ProgressStatus, TaskPaths, write_progress

pytestmark = [
    allure.epic("Execution Runtime"),
    allure.feature("Sandbox Adapter"),
]


class FakeDocker:
    def __init__(self, *, fail_run: bool = False) -> None:
        self.fail_run = fail_run
        self.calls: list[tuple[str, str]] = []
        self.run_kwargs: dict[str, object] = {}
        self.exit_code: asyncio.Future[int] | None = None

    async def run_detached(self, **kwargs: object) -> str:
        self.calls.append(("run", str(kwargs["name"])))
        if self.fail_run:
            raise DockerCommandError("image not found", exit_code=125, stderr="no such image")
        self.run_kwargs = kwargs
        self.exit_code = asyncio.get_running_loop().create_future()
        return "cid-1"

    async def wait(self, container: str) -> int:
        assert self.exit_code is not None
        return await self.exit_code

    async def logs(self, container: str, *, tail: int = 200) -> str:
        self.calls.append(("logs", container))
        return "agent log tail"

    async def pause(self, container: str) -> None:
        self.calls.append(("pause", container))

    async def unpause(self, container: str) -> None:
        self.calls.append(("unpause", container))

    async def stop(self, container: str, *, timeout_seconds: int = 10) -> None:
        self.calls.append(("stop", container))
        if self.exit_code is not None and not self.exit_code.done():
            self.exit_code.set_result(137)

    async def remove(self, container: str) -> None:
        self.calls.append(("remove", container))


class Recorder:
    def __init__(self) -> None:
        self.events: list[str] = []
        self.errors: list[BaseException] = []

    def hooks(self) -> AdapterHooks:
        return AdapterHooks(
            on_started=lambda handle: self.events.append(f"started:{handle}"),
            on_progress=lambda snapshot: self.events.append(f"progress:{snapshot.status.value}"),
            on_artifact=lambda ref: self.events.append(f"artifact:{ref}"),
            on_complete=lambda: self.events.append("complete"),
            on_error=self._error,
        )

    def _error(self, error: BaseException) -> None:
        self.events.append("error")
        self.errors.append(error)


def _adapter(tmp_path: Path, docker: FakeDocker, recorder: Recorder) -> SandboxAdapter:
    return SandboxAdapter(
        hooks=recorder.hooks(),
        docker=docker,
        config=SandboxConfig(
            image="sandbox:test",
            agent_command="agent {prompt}",
            final_snapshot_grace_seconds=0.1,
            poll_interval_seconds=0.01,
            stability_seconds=0,
        ),
        world_root=tmp_path / "world",
        workspace_root=tmp_path,
        sessions=SessionStore(tmp_path / "sessions"),
    )


def _write(tmp_path: Path, task_id: str, status: ProgressStatus, **extra: object) -> None:
    write_progress(
        TaskPaths(tmp_path / "world", task_id),
        ProgressSnapshot(task_id=task_id, status=status, **extra),  # type: ignore[arg-type]
    )


def test_build_mounts_enumerates_reachable_paths(tmp_path: Path) -> None:
    (tmp_path / "AGENTS.md").write_text("# rules", "utf-8")
    task = make_task()
    task.assignees = ["aria", "bram"]

    mounts = build_mounts(task, world_root=tmp_path / "world", workspace_root=tmp_path)

    world = tmp_path / "world"
    assert mounts == [
        Mount(world / "tasks" / task.task_id, f"/workspace/world/tasks/{task.task_id}"),
        Mount(world / "actors" / "aria", "/workspace/world/actors/aria"),
        Mount(world / "actors" / "bram", "/workspace/world/actors/bram"),
        Mount(world / "shared", "/workspace/world/shared", read_only=True),
        Mount(
            world / "memory" / "world.json",
            "/workspace/world/memory/world.json",
            read_only=True,
            is_file=True,
        ),
        Mount(tmp_path / "AGENTS.md", "/workspace/AGENTS.md", read_only=True, is_file=True),
        Mount(ENTRYPOINT_SCRIPT, "/workspace/entrypoint.py", read_only=True, is_file=True),
    ]
    assert mounts[3].to_arg().endswith(":/workspace/world/shared:ro")


@pytest.mark.parametrize(
    ("exit_code", "status", "expected"),
    [
        (0, ProgressStatus.COMPLETED, (True, "completed")),
        (1, ProgressStatus.COMPLETED, (False, "container exited with code 1")),
        (
            0,
            ProgressStatus.IN_PROGRESS,
            (False, "container exited 0 but last progress status was 'in-progress'"),
        ),
        (0, None, (False, "container exited 0 without writing a progress snapshot")),
    ],
)
def test_evaluate_exit(
    exit_code: int,
    status: ProgressStatus | None,
    expected: tuple[bool, str],
) -> None:
    snapshot = ProgressSnapshot(task_id="t", status=status) if status is not None else None

    assert evaluate_exit(exit_code, snapshot) == expected


def test_completed_snapshot_and_clean_exit_complete_the_task(tmp_path: Path) -> None:
    docker = FakeDocker()
    recorder = Recorder()
    adapter = _adapter(tmp_path, docker, recorder)
    task = make_task()

    async def scenario() -> None:
        await adapter.start(task)
        assert adapter.state is AdapterState.RUNNING
        _write(tmp_path, task.task_id, ProgressStatus.COMPLETED, artifact_ref="https://repo")
        await wait_until(lambda: "progress:completed" in recorder.events)
        assert docker.exit_code is not None
        docker.exit_code.set_result(0)
        await wait_until(lambda: adapter.state is AdapterState.COMPLETED)
        await adapter.release()

    asyncio.run(scenario())

    assert recorder.events == [
        "started:cid-1",
        "artifact:https://repo",
        "progress:completed",
        "complete",
    ]
    assert ("remove", "cid-1") in docker.calls
    assert docker.calls[0] == ("remove", container_name(task.task_id))
    assert docker.run_kwargs["command"] == ["python3", "/workspace/entrypoint.py"]


def test_clean_exit_with_in_progress_snapshot_fails_with_logs(tmp_path: Path) -> None:
    docker = FakeDocker()
    recorder = Recorder()
    adapter = _adapter(tmp_path, docker, recorder)
    task = make_task()

    async def scenario() -> None:
        await adapter.start(task)
        _write(tmp_path, task.task_id, ProgressStatus.IN_PROGRESS)
        await wait_until(lambda: "progress:in-progress" in recorder.events)
        assert docker.exit_code is not None
        docker.exit_code.set_result(0)
        await wait_until(lambda: adapter.state is AdapterState.FAILED)

    asyncio.run(scenario())

    error = recorder.errors[0]
    assert isinstance(error, ExecutionError)
    assert str(error) == "container exited 0 but last progress status was 'in-progress'"
    assert error.diagnostics == "agent log tail"
    assert ("logs", "cid-1") in docker.calls


def test_stale_progress_from_previous_run_is_ignored(tmp_path: Path) -> None:
    docker = FakeDocker()
    recorder = Recorder()
    adapter = _adapter(tmp_path, docker, recorder)
    task = make_task()
    _write(tmp_path, task.task_id, ProgressStatus.COMPLETED)

    async def scenario() -> None:
        await adapter.start(task)
        assert docker.exit_code is not None
        docker.exit_code.set_result(0)
        await wait_until(lambda: adapter.state is AdapterState.FAILED)

    asyncio.run(scenario())

    assert str(recorder.errors[0]) == "container exited 0 without writing a progress snapshot"


def test_lagging_final_snapshot_within_grace_period_completes(tmp_path: Path) -> None:
    docker = FakeDocker()
    recorder = Recorder()
    adapter = _adapter(tmp_path, docker, recorder)
    task = make_task()

    async def scenario() -> None:
        await adapter.start(task)
        assert docker.exit_code is not None
        docker.exit_code.set_result(0)
        await asyncio.sleep(0.02)
        _write(tmp_path, task.task_id, ProgressStatus.COMPLETED)
        await wait_until(lambda: adapter.state is not AdapterState.RUNNING)

    asyncio.run(scenario())

    assert adapter.state is AdapterState.COMPLETED
    assert recorder.events[-1] == "complete"


def test_launch_failure_raises_start_error(tmp_path: Path) -> None:
    docker = FakeDocker(fail_run=True)
    recorder = Recorder()
    adapter = _adapter(tmp_path, docker, recorder)

    async def scenario() -> None:
        with pytest.raises(AdapterStartError, match="failed to launch"):
            await adapter.start(make_task())

    asyncio.run(scenario())

    assert adapter.state is AdapterState.FAILED
    assert recorder.events == []


def test_pause_resume_and_release_drive_docker(tmp_path: Path) -> None:
    docker = FakeDocker()
    recorder = Recorder()
    adapter = _adapter(tmp_path, docker, recorder)
    task = make_task()
    task.title = "Draft & send"
    task.revision_note = "less formal"
    adapter.sessions.write(task.task_id, "sess-9")

    async def scenario() -> None:
        await adapter.start(task)
        await adapter.pause()
        assert adapter.state is AdapterState.PAUSED
        await adapter.inject_message("Use tone B.")
        await adapter.resume(task)
        assert adapter.state is AdapterState.RUNNING
        await adapter.release()

    asyncio.run(scenario())

    assert [call for call in docker.calls if call[0] in {"pause", "unpause", "stop"}] == [
        ("pause", "cid-1"),
        ("unpause", "cid-1"),
        ("stop", "cid-1"),
    ]
    assert "error" not in recorder.events
    env = docker.run_kwargs["env"]
    assert isinstance(env, dict)
    assert env["TASK_TITLE"] == "Draft%20%26%20send"
    assert unquote(env["TASK_REVISION_NOTE"]) == "less formal"
    assert env["SESSION_ID"] == "sess-9"
    assert env["SANDBOX_TOOLS_ENABLED"] == "1"
