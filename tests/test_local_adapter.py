from __future__ import annotations

import asyncio
from pathlib import Path

import allure
from helpers import make_task, wait_until

from taskplane.runtime.base import AdapterHooks, AdapterState, ExecutionError
from taskplane.runtime.execution import (
    ExecutionContext,
    ExecutionRequest,
    SessionStarted,
    TurnCompleted,
)
from taskplane.runtime.local import InProcessAdapter
from taskplane.runtime.sessions import SessionStore
from taskplane.runtime.sync import (
    ProgressSnapshot,
    ProgressStatus,
    TaskPaths,
    append_inbox,
    read_inbox,
    write_progress,
)

pytestmark = [
    allure.epic("Execution Runtime"),
    allure.feature("In-Process Adapter"),
]


class ScriptedCollaborator:
    """Collaborator whose turns are scripted per call."""

    def __init__(self, turns: list[str]) -> None:
        self.turns = turns
        self.requests: list[ExecutionRequest] = []
        self.world_root: Path | None = None

    async def run(self, context: ExecutionContext, request: ExecutionRequest) -> TurnCompleted:
        self.requests.append(request)
        action = self.turns[len(self.requests) - 1]
        await context.emit(SessionStarted(session_id=request.session_id or "sess-1"))
        if action == "block":
            await asyncio.sleep(60)
        if action == "raise":
            raise ExecutionError("agent crashed", diagnostics="traceback here")
        if action == "waiting":
            assert self.world_root is not None
            write_progress(
                TaskPaths(self.world_root, request.task_id),
                ProgressSnapshot(
                    task_id=request.task_id,
                    status=ProgressStatus.WAITING_FOR_HUMAN,
                    question="Use tone A or B?",
                ),
            )
        return TurnCompleted(ok=action != "not-ok", output=action)


class HookRecorder:
    def __init__(self) -> None:
        self.events: list[str] = []
        self.errors: list[BaseException] = []
        self.snapshots: list[ProgressSnapshot] = []

    def hooks(self) -> AdapterHooks:
        return AdapterHooks(
            on_started=lambda handle: self.events.append(f"started:{handle}"),
            on_progress=self.snapshots.append,
            on_complete=lambda: self.events.append("complete"),
            on_error=self._on_error,
        )

    def _on_error(self, error: BaseException) -> None:
        self.events.append("error")
        self.errors.append(error)


def _adapter(
    tmp_path: Path,
    collaborator: ScriptedCollaborator,
    recorder: HookRecorder,
) -> tuple[InProcessAdapter, SessionStore]:
    sessions = SessionStore(tmp_path / "sessions")
    collaborator.world_root = tmp_path / "world"
    adapter = InProcessAdapter(
        hooks=recorder.hooks(),
        collaborator=collaborator,
        sessions=sessions,
        world_root=tmp_path / "world",
        watch_poll_interval_seconds=0.01,
        watch_stability_seconds=0,
    )
    return adapter, sessions


def test_start_runs_initial_turn_and_completes(tmp_path: Path) -> None:
    collaborator = ScriptedCollaborator(["ok"])
    recorder = HookRecorder()
    adapter, sessions = _adapter(tmp_path, collaborator, recorder)
    task = make_task()

    async def scenario() -> None:
        await adapter.start(task)
        await wait_until(lambda: adapter.state is AdapterState.COMPLETED)
        await adapter.release()

    asyncio.run(scenario())

    assert recorder.events == ["started:None", "complete"]
    assert sessions.read(task.task_id) == "sess-1"
    request = collaborator.requests[0]
    assert request.prompt.startswith(f"Task {task.task_id}: Draft announcement")
    assert request.session_id is None
    assert request.workdir == TaskPaths(tmp_path / "world", task.task_id).task_dir


def test_pause_then_resume_keeps_session_and_never_fails(tmp_path: Path) -> None:
    collaborator = ScriptedCollaborator(["block", "ok"])
    recorder = HookRecorder()
    adapter, sessions = _adapter(tmp_path, collaborator, recorder)
    task = make_task()

    async def scenario() -> None:
        await adapter.start(task)
        await wait_until(lambda: sessions.read(task.task_id) == "sess-1")
        await adapter.pause()
        assert adapter.state is AdapterState.PAUSED
        await adapter.pause()

        await adapter.inject_message("Use tone B.")
        await adapter.resume(task)
        await wait_until(lambda: adapter.state is AdapterState.COMPLETED)
        await adapter.release()

    asyncio.run(scenario())

    assert "error" not in recorder.events
    assert recorder.events == ["started:None", "complete"]
    resumed = collaborator.requests[1]
    assert resumed.session_id == "sess-1"
    assert resumed.prompt.startswith(f"Continue task {task.task_id}: Draft announcement")
    assert "- Use tone B." in resumed.prompt
    assert read_inbox(TaskPaths(tmp_path / "world", task.task_id)) == []


def test_start_resumes_when_session_already_exists(tmp_path: Path) -> None:
    collaborator = ScriptedCollaborator(["ok"])
    recorder = HookRecorder()
    adapter, sessions = _adapter(tmp_path, collaborator, recorder)
    task = make_task()
    sessions.write(task.task_id, "sess-before-crash")
    append_inbox(TaskPaths(tmp_path / "world", task.task_id), "queued while down")

    async def scenario() -> None:
        await adapter.start(task)
        await wait_until(lambda: adapter.state is AdapterState.COMPLETED)
        await adapter.release()

    asyncio.run(scenario())

    request = collaborator.requests[0]
    assert request.session_id == "sess-before-crash"
    assert request.prompt.startswith("Continue task")
    assert "- queued while down" in request.prompt


def test_collaborator_error_is_reported(tmp_path: Path) -> None:
    collaborator = ScriptedCollaborator(["raise"])
    recorder = HookRecorder()
    adapter, _ = _adapter(tmp_path, collaborator, recorder)

    async def scenario() -> None:
        await adapter.start(make_task())
        await wait_until(lambda: adapter.state is AdapterState.FAILED)
        await adapter.release()

    asyncio.run(scenario())

    assert recorder.events == ["started:None", "error"]
    assert isinstance(recorder.errors[0], ExecutionError)
    assert recorder.errors[0].diagnostics == "traceback here"


def test_unsuccessful_turn_is_reported(tmp_path: Path) -> None:
    collaborator = ScriptedCollaborator(["not-ok"])
    recorder = HookRecorder()
    adapter, _ = _adapter(tmp_path, collaborator, recorder)

    async def scenario() -> None:
        await adapter.start(make_task())
        await wait_until(lambda: adapter.state is AdapterState.FAILED)
        await adapter.release()

    asyncio.run(scenario())

    assert str(recorder.errors[0]) == "Collaborator reported an unsuccessful turn"


def test_progress_written_during_turn_reaches_hook(tmp_path: Path) -> None:
    collaborator = ScriptedCollaborator(["waiting"])
    recorder = HookRecorder()
    adapter, _ = _adapter(tmp_path, collaborator, recorder)

    async def scenario() -> None:
        await adapter.start(make_task())
        await wait_until(lambda: adapter.state is AdapterState.COMPLETED)
        await adapter.release()

    asyncio.run(scenario())

    assert [snapshot.question for snapshot in recorder.snapshots] == ["Use tone A or B?"]
