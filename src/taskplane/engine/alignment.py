"""Operator console and the human-alignment protocol.

While a task is waiting for a human decision, free-form operator input is
routed to that task's inbox instead of being treated as a new task or a
global command. Alignment ends when the task reports any other status, or
when the operator ends it explicitly.
"""

from __future__ import annotations

import logging
from pathlib import Path

from taskplane.engine.notifications import GLOBAL_SCOPE, Notifier
from taskplane.engine.scheduler import SchedulerLoop
from taskplane.runtime.sync import (
    ProgressStatus,
    ProgressSnapshot,
    TaskPaths,
    append_inbox,
    clear_pause_signal,
    read_progress,
    write_pause_signal,
)
from taskplane.tasks.models import TaskCreate, TaskCreator, TaskStatus
from taskplane.tasks.repository import TaskNotFoundError, TaskRepository
from taskplane.tasks.signals import SignalQueue, SignalType

logger = logging.getLogger(__name__)

PAUSE_ADVISORY = (
    "The operator asked you to pause. Stop at your next safe boundary, write "
    "progress.json with status waiting_for_human and a question, then wait for a reply "
    "in this inbox."
)
INDEPENDENT_JUDGMENT = (
    "The operator ended the discussion. Continue with your best independent judgment."
)
DEFAULT_PAUSE_QUESTION = "The operator wants to check in. What is your status and what next?"
TITLE_MAX_CHARS = 80
HELP_LINES = [
    "/task <text>                   queue a new task",
    "/tasks                         list recent tasks",
    "/status <id>                   task status and latest progress",
    "/msg --task <id> <text>        send a message to a task",
    "/pause --task <id> [text]      ask a task to stop and check in",
    "/freeze [--task <id>]          hard-pause everything or one task",
    "/resume [--task <id>]          end alignment or resume frozen work",
    "/done                          end alignment",
    "/revise <id> <feedback>        re-run a finished task with feedback",
]


class OperatorConsole:
    """Parses operator lines and drives the alignment session."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        scheduler: SchedulerLoop,
        repository: TaskRepository,
        signals: SignalQueue,
        notifier: Notifier,
        world_root: Path,
    ) -> None:
        self.scheduler = scheduler
        self.repository = repository
        self.signals = signals
        self.notifier = notifier
        self.world_root = world_root
        self._question: str | None = None
        self._waiting: dict[str, str] = {}
        scheduler.progress_listeners.append(self.on_progress)

    @property
    def aligning_task_id(self) -> str | None:
        return self.scheduler.state.aligning_task_id

    def on_progress(self, task_id: str, snapshot: ProgressSnapshot) -> None:
        if snapshot.status is ProgressStatus.WAITING_FOR_HUMAN:
            question = snapshot.question or DEFAULT_PAUSE_QUESTION
            current = self.aligning_task_id
            if current is None:
                self._enter(task_id, question)
            elif current == task_id:
                if question != self._question:
                    self._question = question
                    self.notifier.notify(task_id, f"follow-up question: {question}")
            else:
                self._waiting[task_id] = question
                self.notifier.notify(task_id, f"also waiting for input: {question}")
            return

        self._waiting.pop(task_id, None)
        if self.aligning_task_id == task_id:
            self.notifier.notify(task_id, f"alignment resolved, task is {snapshot.status.value}")
            self._exit()

    async def handle(self, line: str, *, scope: str | None = None) -> list[str]:
        """Handle one operator line; ``scope`` pins free text to a task id or ``global``."""

        text = line.strip()
        if not text:
            return []
        if not text.startswith("/"):
            return await self._free_text(text, scope=scope)

        command, _, rest = text.partition(" ")
        rest = rest.strip()
        try:
            if command == "/help":
                return list(HELP_LINES)
            if command == "/task":
                return self._add_task(rest)
            if command == "/tasks":
                return self._list_tasks()
            if command == "/status":
                return self._status(rest)
            if command == "/msg":
                task_ref, message = _split_task_option(rest)
                if task_ref is None or not message:
                    return ["Usage: /msg --task <id> <text>"]
                return await self._message(task_ref, message)
            if command == "/pause":
                task_ref, message = _split_task_option(rest)
                if task_ref is None:
                    return ["Usage: /pause --task <id> [text]"]
                return await self._request_alignment(task_ref, message)
            if command == "/freeze":
                task_ref, _ = _split_task_option(rest)
                return self._signal(SignalType.FREEZE, task_ref)
            if command in {"/done", "/resume"}:
                aligning = self.aligning_task_id
                if aligning is not None:
                    return await self._end_alignment(aligning)
                if command == "/done":
                    return ["Not in an alignment session."]
                task_ref, _ = _split_task_option(rest)
                return self._signal(SignalType.RESUME, task_ref)
            if command == "/revise":
                task_ref, _, feedback = rest.partition(" ")
                if not task_ref or not feedback.strip():
                    return ["Usage: /revise <id> <feedback>"]
                return self._revise(task_ref, feedback.strip())
        except TaskNotFoundError as error:
            return [str(error)]
        return [f"Unknown command: {command}. Type /help for commands."]

    async def _free_text(self, text: str, *, scope: str | None) -> list[str]:
        if scope is not None and scope != GLOBAL_SCOPE:
            return await self._message(scope, text)
        aligning = self.aligning_task_id
        if aligning is not None:
            await self._deliver(aligning, text)
            return [f"-> {aligning[:8]}: {text}"]
        self.scheduler.queue_operator_message(text)
        return ["Queued for the next assignment turn."]

    def _add_task(self, text: str) -> list[str]:
        if not text:
            return ["Usage: /task <text>"]
        title = text.splitlines()[0][:TITLE_MAX_CHARS]
        task = self.repository.enqueue(
            TaskCreate(title=title, description=text, created_by=TaskCreator.HUMAN),
        )
        self.signals.append(SignalType.TASK_ADDED, {"taskId": task.task_id})
        self.notifier.notify(task.task_id, f"queued: {task.title}")
        return [f"Task queued: {task.short_id} {task.title}"]

    def _list_tasks(self) -> list[str]:
        tasks = self.repository.list_tasks(limit=20)
        if not tasks:
            return ["No tasks."]
        return [
            f"{task.short_id} {task.status.value:<11} {task.priority.value:<8} {task.title}"
            for task in tasks
        ]

    def _status(self, task_ref: str) -> list[str]:
        if not task_ref:
            state = self.scheduler.state
            return [
                f"Scheduler: {state.mode.value}, {state.phase.value}, "
                f"active={len(state.active_task_ids)} frozen={len(state.frozen_task_ids)}",
                f"Aligning: {state.aligning_task_id[:8] if state.aligning_task_id else '-'}",
            ]
        task = self.repository.require(task_ref)
        lines = [
            f"{task.short_id} {task.title}",
            f"Status: {task.status.value}  Assignees: {', '.join(task.assignees) or '-'}",
        ]
        snapshot = read_progress(TaskPaths(self.world_root, task.task_id).progress)
        if snapshot is not None:
            lines.append(
                f"Progress: {snapshot.status.value} {snapshot.percent_complete}% "
                f"{snapshot.summary}".rstrip(),
            )
            if snapshot.question:
                lines.append(f"Question: {snapshot.question}")
        if task.error_summary:
            lines.append(f"Error: {task.error_summary}")
        return lines

    async def _message(self, task_ref: str, text: str) -> list[str]:
        task = self.repository.require(task_ref)
        await self._deliver(task.task_id, text)
        return [f"-> {task.short_id}: {text}"]

    async def _request_alignment(self, task_ref: str, message: str) -> list[str]:
        """Soft alignment: inbox advisory plus a pause signal for in-container supervisors."""

        task = self.repository.require(task_ref)
        if task.status is not TaskStatus.IN_PROGRESS:
            return [f"Task {task.short_id} is {task.status.value}, nothing to pause."]
        question = message or DEFAULT_PAUSE_QUESTION
        paths = TaskPaths(self.world_root, task.task_id)
        await self._deliver(task.task_id, PAUSE_ADVISORY)
        write_pause_signal(paths, question)
        if self.aligning_task_id is None:
            self._enter(task.task_id, question, announce=False)
        self.notifier.notify(task.task_id, "pause requested, waiting for the task to check in")
        return [f"Pause requested for {task.short_id}."]

    async def _end_alignment(self, task_id: str) -> list[str]:
        await self._deliver(task_id, INDEPENDENT_JUDGMENT)
        clear_pause_signal(TaskPaths(self.world_root, task_id))
        self.notifier.notify(task_id, "alignment ended by operator")
        self._exit()
        return [f"Alignment with {task_id[:8]} ended."]

    def _signal(self, signal_type: SignalType, task_ref: str | None) -> list[str]:
        payload = None
        if task_ref is not None:
            payload = {"taskId": self.repository.require(task_ref).task_id}
        self.signals.append(signal_type, payload)
        target = task_ref or GLOBAL_SCOPE
        return [f"{signal_type.value} requested for {target}."]

    def _revise(self, task_ref: str, feedback: str) -> list[str]:
        task = self.repository.require(task_ref)
        revised = self.scheduler.revise(task.task_id, feedback)
        if revised is None:
            return [
                f"Task {task.short_id} cannot be revised: it is {task.status.value} "
                "or still has an active runner.",
            ]
        return [f"Task {revised.short_id} queued for revision {revised.revision_count}."]

    async def _deliver(self, task_id: str, text: str) -> None:
        runner = self.scheduler.runners.get(task_id)
        if runner is not None:
            await runner.inject_message(text)
        else:
            append_inbox(TaskPaths(self.world_root, task_id), text)

    def _enter(self, task_id: str, question: str, *, announce: bool = True) -> None:
        self.scheduler.set_aligning(task_id)
        self._question = question
        logger.info("Alignment started for task %s", task_id[:8])
        if announce:
            self.notifier.notify(task_id, f"needs input: {question}")

    def _exit(self) -> None:
        self.scheduler.set_aligning(None)
        self._question = None
        if self._waiting:
            task_id, question = next(iter(self._waiting.items()))
            del self._waiting[task_id]
            self._enter(task_id, question)


def _split_task_option(rest: str) -> tuple[str | None, str]:
    """Split ``--task <id> remaining text`` into the id and the remaining text."""

    parts = rest.split(maxsplit=2)
    if len(parts) >= 2 and parts[0] == "--task":  # noqa: PLR2004
        return parts[1], parts[2] if len(parts) > 2 else ""  # noqa: PLR2004
    return None, rest
