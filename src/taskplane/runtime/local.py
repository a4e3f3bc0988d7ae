"""In-process runtime adapter: drives the execution collaborator inside the control plane."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path

from taskplane.runtime.base import AdapterHooks, AdapterState, ExecutionError
from taskplane.runtime.execution import (
    Checkpointed,
    ChildResult,
    ExecutionCollaborator,
    ExecutionContext,
    ExecutionMessage,
    ExecutionRequest,
    SessionStarted,
    TurnCompleted,
)
from taskplane.runtime.sessions import SessionStore
from taskplane.runtime.sync import TaskPaths, append_inbox, drain_inbox
from taskplane.runtime.watcher import ProgressWatcher
from taskplane.tasks.models import TaskView

logger = logging.getLogger(__name__)

PROGRESS_CONTRACT = """\
Report progress by rewriting {progress_path} as JSON with keys:
taskId, status (in-progress|completed|failed|blocked|waiting_for_human), summary,
percentComplete (0-100), checkpoints [{{at, description}}], and question when you
need a human decision (status waiting_for_human).
Check {inbox_path} for operator messages at every safe boundary; after reading,
rewrite it with an empty messages list."""


class InProcessAdapter:
    """Runs collaborator turns as asyncio tasks and resumes them by session id.

    ``pause`` cancels the in-flight turn. Checkpoints already persisted survive,
    so at most the current unsaved turn is lost, and a paused adapter is never
    reported as failed.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        hooks: AdapterHooks,
        collaborator: ExecutionCollaborator,
        sessions: SessionStore,
        world_root: Path,
        max_child_contexts: int = 4,
        watch_poll_interval_seconds: float = 0.2,
        watch_stability_seconds: float = 0.2,
    ) -> None:
        self.hooks = hooks
        self.collaborator = collaborator
        self.sessions = sessions
        self.world_root = world_root
        self.max_child_contexts = max_child_contexts
        self.watch_poll_interval_seconds = watch_poll_interval_seconds
        self.watch_stability_seconds = watch_stability_seconds
        self._state = AdapterState.IDLE
        self._task: TaskView | None = None
        self._paths: TaskPaths | None = None
        self._turn: asyncio.Task[None] | None = None
        self._watcher: ProgressWatcher | None = None
        self._interrupting = False

    @property
    def state(self) -> AdapterState:
        return self._state

    async def start(self, task: TaskView) -> None:
        if self._state is not AdapterState.IDLE:
            raise RuntimeError(f"Adapter for {task.short_id} was already started.")
        self._task = task
        self._paths = TaskPaths(self.world_root, task.task_id)
        self._paths.task_dir.mkdir(parents=True, exist_ok=True)
        self._watcher = ProgressWatcher(
            self._paths.progress,
            self.hooks.on_progress,
            poll_interval_seconds=self.watch_poll_interval_seconds,
            stability_seconds=self.watch_stability_seconds,
        )
        self._watcher.start()

        session_id = self.sessions.read(task.task_id)
        prompt = (
            build_resume_prompt(task, self._paths, drain_inbox(self._paths))
            if session_id
            else build_initial_prompt(task, self._paths, drain_inbox(self._paths))
        )
        self._launch(task, self._paths, prompt)
        self.hooks.on_started(None)

    async def pause(self) -> None:
        if self._state is not AdapterState.RUNNING:
            return
        await self._interrupt()
        self._state = AdapterState.PAUSED
        logger.info("In-process task %s paused", self._task.short_id if self._task else "?")

    async def resume(self, task: TaskView) -> None:
        if self._state is not AdapterState.PAUSED:
            return
        if self._paths is None:
            raise RuntimeError(f"Adapter for {task.short_id} was never started.")
        self._task = task
        prompt = build_resume_prompt(task, self._paths, drain_inbox(self._paths))
        self._launch(task, self._paths, prompt)

    async def inject_message(self, text: str) -> None:
        if self._paths is None:
            raise RuntimeError("Cannot inject a message before the adapter is started.")
        append_inbox(self._paths, text)

    async def release(self) -> None:
        await self._interrupt()
        if self._watcher is not None:
            await self._watcher.stop()

    def _launch(self, task: TaskView, paths: TaskPaths, prompt: str) -> None:
        self._state = AdapterState.RUNNING
        self._interrupting = False
        self._turn = asyncio.get_running_loop().create_task(
            self._run_turn(task, paths, prompt),
            name=f"in-process:{task.short_id}",
        )

    async def _interrupt(self) -> None:
        turn = self._turn
        if turn is None or turn.done():
            return
        self._interrupting = True
        turn.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await turn

    async def _run_turn(self, task: TaskView, paths: TaskPaths, prompt: str) -> None:
        context = ExecutionContext(task.task_id, max_children=self.max_child_contexts)
        consumer = asyncio.get_running_loop().create_task(self._consume(task.task_id, context))
        request = ExecutionRequest(
            task_id=task.task_id,
            prompt=prompt,
            workdir=paths.task_dir,
            session_id=self.sessions.read(task.task_id),
        )
        try:
            outcome = await self.collaborator.run(context, request)
        except asyncio.CancelledError:
            await context.cancel()
            await self._flush(task.task_id, context, consumer)
            if not self._interrupting:
                raise
            return
        except Exception as error:  # noqa: BLE001
            await self._flush(task.task_id, context, consumer)
            self._finish_failed(error)
            return

        await context.wait_children()
        await self._flush(task.task_id, context, consumer)
        if outcome.session_id:
            self.sessions.write(task.task_id, outcome.session_id)
        if self._watcher is not None:
            self._watcher.poll()
        if outcome.ok:
            self._state = AdapterState.COMPLETED
            await self._stop_watcher()
            self.hooks.on_complete()
        else:
            self._finish_failed(
                ExecutionError(
                    "Collaborator reported an unsuccessful turn",
                    diagnostics=outcome.output,
                ),
            )

    def _finish_failed(self, error: BaseException) -> None:
        self._state = AdapterState.FAILED
        if self._watcher is not None:
            asyncio.get_running_loop().create_task(self._stop_watcher())
        self.hooks.on_error(error)

    async def _stop_watcher(self) -> None:
        if self._watcher is not None:
            await self._watcher.stop()

    async def _consume(self, task_id: str, context: ExecutionContext) -> None:
        while True:
            message = await context.channel.get()
            self._handle_message(task_id, message)

    async def _flush(
        self,
        task_id: str,
        context: ExecutionContext,
        consumer: asyncio.Task[None],
    ) -> None:
        """Stop the consumer and apply queued messages so no session id is lost."""

        consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await consumer
        while not context.channel.empty():
            self._handle_message(task_id, context.channel.get_nowait())

    def _handle_message(self, task_id: str, message: ExecutionMessage) -> None:
        if isinstance(message, SessionStarted | Checkpointed):
            self.sessions.write(task_id, message.session_id)
        elif isinstance(message, TurnCompleted) and message.session_id:
            self.sessions.write(task_id, message.session_id)
        elif isinstance(message, ChildResult):
            logger.info(
                "Child context %s finished (ok=%s): %s",
                message.context_id,
                message.ok,
                message.output[:200],
            )


def build_initial_prompt(task: TaskView, paths: TaskPaths, inbox: list[str]) -> str:
    lines = [f"Task {task.task_id}: {task.title}"]
    if task.description:
        lines += ["", task.description]
    if task.assignees:
        assigned = ", ".join(task.assignees)
        lines += ["", f"Assigned to: {assigned} (leader: {task.leader_id or '-'})"]
    if task.revision_count and task.revision_note:
        lines += [
            "",
            f"This is revision {task.revision_count}. Operator feedback on the previous run:",
            task.revision_note,
        ]
    if inbox:
        lines += ["", "Operator messages:", *[f"- {message}" for message in inbox]]
    lines += [
        "",
        PROGRESS_CONTRACT.format(progress_path=paths.progress, inbox_path=paths.inbox),
    ]
    return "\n".join(lines)


def build_resume_prompt(task: TaskView, paths: TaskPaths, inbox: list[str]) -> str:
    lines = [f"Continue task {task.task_id}: {task.title} from your last checkpoint."]
    if task.revision_count and task.revision_note:
        lines += ["", f"Operator feedback (revision {task.revision_count}): {task.revision_note}"]
    if inbox:
        lines += ["", "Operator messages since you paused:", *[f"- {m}" for m in inbox]]
    lines += [
        "",
        PROGRESS_CONTRACT.format(progress_path=paths.progress, inbox_path=paths.inbox),
    ]
    return "\n".join(lines)
