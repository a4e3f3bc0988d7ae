"""Scheduler loop: fixed-period, re-entrancy-guarded tick over the task store."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from taskplane.config import SchedulerSettings
from taskplane.engine.assignment import AssignmentCollaborator, AssignmentView
from taskplane.engine.notifications import GLOBAL_SCOPE, Notifier
from taskplane.engine.runner import TaskRunner
from taskplane.runtime.base import AdapterFactory
from taskplane.runtime.failure_classifier import classify_exception
from taskplane.runtime.sessions import SessionStore
from taskplane.runtime.sync import ProgressSnapshot
from taskplane.tasks.models import TaskStatus, TaskView
from taskplane.tasks.repository import TaskRepository
from taskplane.tasks.signals import Signal, SignalQueue, SignalType

logger = logging.getLogger(__name__)

REST_ADVISORY = (
    "Rest period started. At your next convenient boundary, save a checkpoint "
    "in progress.json and keep going; nothing is being stopped."
)


class LoopMode(str, Enum):
    RUNNING = "running"
    FROZEN = "frozen"


class RestPhase(str, Enum):
    WORKING = "working"
    RESTING = "resting"


@dataclass(frozen=True, slots=True)
class SchedulerState:
    """Immutable scheduler state; every change replaces the whole value."""

    mode: LoopMode = LoopMode.RUNNING
    phase: RestPhase = RestPhase.WORKING
    frozen_task_ids: frozenset[str] = frozenset()
    aligning_task_id: str | None = None
    active_task_ids: frozenset[str] = frozenset()
    ticks: int = 0
    skipped_ticks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "phase": self.phase.value,
            "frozen_task_ids": sorted(self.frozen_task_ids),
            "aligning_task_id": self.aligning_task_id,
            "active_task_ids": sorted(self.active_task_ids),
            "ticks": self.ticks,
            "skipped_ticks": self.skipped_ticks,
        }


class SchedulerLoop:
    """Drains signals, starts runners and triggers assignment once per tick.

    Only the tick mutates the runner registry, and ticks never overlap: a
    tick requested while the previous one is still running is skipped.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        signals: SignalQueue,
        adapter_factory: AdapterFactory,
        assigner: AssignmentCollaborator,
        notifier: Notifier,
        sessions: SessionStore,
        executors: tuple[str, ...],
        settings: SchedulerSettings | None = None,
    ) -> None:
        self.repository = repository
        self.signals = signals
        self.adapter_factory = adapter_factory
        self.assigner = assigner
        self.notifier = notifier
        self.sessions = sessions
        self.executors = executors
        self.settings = settings or SchedulerSettings()
        self.runners: dict[str, TaskRunner] = {}
        self.progress_listeners: list[Callable[[str, ProgressSnapshot], None]] = []
        self._state = SchedulerState()
        self._tick_busy = False
        self._assignment_task: asyncio.Task[None] | None = None
        self._assignment_requested = False
        self._operator_messages: list[str] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._random = random.Random()  # noqa: S311

    @property
    def state(self) -> SchedulerState:
        return self._state

    def snapshot(self) -> dict[str, Any]:
        return self._state.to_dict()

    def set_aligning(self, task_id: str | None) -> None:
        self._replace(aligning_task_id=task_id)

    def queue_operator_message(self, text: str) -> None:
        """Keep global free text for the next assignment turn."""

        self._operator_messages.append(text)
        self._assignment_requested = True

    async def tick(self) -> bool:
        """Run one tick; returns ``False`` when skipped because a tick is still running."""

        if self._tick_busy:
            self._replace(skipped_ticks=self._state.skipped_ticks + 1)
            logger.debug("Tick skipped: previous tick still running")
            return False
        self._tick_busy = True
        try:
            self._replace(ticks=self._state.ticks + 1)
            for signal in self.signals.drain():
                try:
                    await self._handle_signal(signal)
                except Exception:
                    logger.exception("Signal %s failed", signal.signal_type.value)
            if self._state.mode is LoopMode.FROZEN:
                return True
            for task in self.repository.list_by_status(TaskStatus.ASSIGNED):
                await self.start_runner(task)
            if self._assignment_requested or self.repository.list_by_status(TaskStatus.PENDING):
                self._request_assignment()
        finally:
            self._tick_busy = False
        return True

    async def recover(self) -> list[str]:
        """Startup-only pass over tasks left ``in-progress`` by a previous process.

        A task with a persisted session resumes immediately; one without a
        session never truly started and goes back to ``assigned`` so the next
        tick restarts it from scratch.
        """

        recovered: list[str] = []
        for task in self.repository.list_by_status(TaskStatus.IN_PROGRESS):
            if task.task_id in self.runners:
                continue
            if self.sessions.exists(task.task_id):
                logger.info("Recovering task %s from its persisted session", task.short_id)
                await self.start_runner(task, recovered=True)
            else:
                logger.info("Restarting task %s: no session was persisted", task.short_id)
                self.repository.update_status(
                    task_id=task.task_id,
                    status=TaskStatus.ASSIGNED,
                    event_type="recovery_restart",
                )
                self.notifier.notify(task.task_id, "restarting from scratch after crash")
            recovered.append(task.task_id)
        return recovered

    async def start_runner(self, task: TaskView, *, recovered: bool = False) -> TaskRunner | None:
        if task.task_id in self.runners:
            return None
        runner = TaskRunner(
            task=task,
            adapter_factory=self.adapter_factory,
            repository=self.repository,
            notifier=self.notifier,
            on_progress=self._dispatch_progress,
            on_finished=self._on_runner_finished,
        )
        self.runners[task.task_id] = runner
        self._sync_active()
        await runner.start(recovered=recovered)
        return runner

    def revise(self, task_id: str, feedback: str) -> TaskView | None:
        task = self.repository.revise_task(
            task_id=task_id,
            feedback=feedback,
            runner_active=task_id in self.runners,
        )
        if task is not None:
            self.notifier.notify(task_id, f"revision {task.revision_count} queued: {feedback}")
        return task

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Recover once, then schedule a tick every ``tick_seconds`` until stopped."""

        await self.recover()
        while not stop.is_set():
            self._spawn(self._tick_logged(), name="scheduler-tick")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.settings.tick_seconds)

    async def shutdown(self) -> None:
        if self._assignment_task is not None:
            self._assignment_task.cancel()
        for task in list(self._background):
            task.cancel()
        for runner in list(self.runners.values()):
            await runner.release()
        self.runners.clear()
        self._sync_active()
        await asyncio.gather(*self._background, return_exceptions=True)

    async def _tick_logged(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("Scheduler tick failed")

    async def _handle_signal(self, signal: Signal) -> None:
        if signal.signal_type is SignalType.FREEZE:
            await self._freeze(signal.task_id)
        elif signal.signal_type is SignalType.RESUME:
            await self._resume(signal.task_id)
        elif signal.signal_type is SignalType.REST_START:
            self._replace(phase=RestPhase.RESTING)
            for task_id, runner in list(self.runners.items()):
                if not runner.is_finished:
                    await _runner_call(task_id, "inject", runner.inject_message(REST_ADVISORY))
            self.notifier.notify(GLOBAL_SCOPE, "rest period started")
        elif signal.signal_type is SignalType.DAY_END:
            self._replace(phase=RestPhase.WORKING)
            self.notifier.notify(GLOBAL_SCOPE, "day ended")
        elif signal.signal_type is SignalType.TASK_ADDED:
            self._assignment_requested = True

    async def _freeze(self, task_ref: str | None) -> None:
        if task_ref is None:
            self._replace(mode=LoopMode.FROZEN)
            for task_id, runner in list(self.runners.items()):
                await _runner_call(task_id, "pause", runner.pause())
            logger.info("Scheduler frozen")
            self.notifier.notify(GLOBAL_SCOPE, "frozen: all runners paused")
            return
        task_id = self.repository.resolve_id(task_ref) or task_ref
        runner = self.runners.get(task_id)
        if runner is None:
            logger.warning("Freeze ignored: no active runner for %s", task_ref)
            return
        await _runner_call(task_id, "pause", runner.pause())
        self._replace(frozen_task_ids=self._state.frozen_task_ids | {task_id})

    async def _resume(self, task_ref: str | None) -> None:
        if task_ref is None:
            self._replace(mode=LoopMode.RUNNING)
            for task_id, runner in list(self.runners.items()):
                if task_id not in self._state.frozen_task_ids:
                    await _runner_call(task_id, "resume", runner.resume())
            logger.info("Scheduler resumed")
            self.notifier.notify(GLOBAL_SCOPE, "resumed")
            return
        task_id = self.repository.resolve_id(task_ref) or task_ref
        self._replace(frozen_task_ids=self._state.frozen_task_ids - {task_id})
        runner = self.runners.get(task_id)
        if runner is not None and self._state.mode is LoopMode.RUNNING:
            await _runner_call(task_id, "resume", runner.resume())

    def _request_assignment(self) -> None:
        if self._assignment_task is not None and not self._assignment_task.done():
            return
        self._assignment_requested = False
        messages = tuple(self._operator_messages)
        self._operator_messages.clear()
        self._assignment_task = asyncio.get_running_loop().create_task(
            self._run_assignment(messages),
            name="assignment-turn",
        )

    async def _run_assignment(self, messages: tuple[str, ...]) -> None:
        """One assignment turn, retried with jittered backoff on transient failures."""

        max_attempts = max(1, self.settings.assignment_max_attempts)
        for attempt in range(1, max_attempts + 1):
            view = AssignmentView(
                repository=self.repository,
                executors=self.executors,
                operator_messages=messages,
            )
            try:
                assigned = await asyncio.wait_for(
                    self.assigner.assign(view),
                    timeout=self.settings.assignment_timeout_seconds,
                )
            except asyncio.CancelledError:
                raise
            except Exception as error:  # noqa: BLE001
                classification = classify_exception(error)
                if not classification.transient or attempt >= max_attempts:
                    logger.error(
                        "Assignment turn failed (%s, attempt %d/%d): %s",
                        classification.failure_class.value,
                        attempt,
                        max_attempts,
                        error,
                    )
                    self.notifier.notify(GLOBAL_SCOPE, f"assignment failed: {error}")
                    return
                delay = self._compute_retry_delay(retry_number=attempt)
                logger.warning(
                    "Assignment turn failed transiently (attempt %d/%d), retrying in %.1fs: %s",
                    attempt,
                    max_attempts,
                    delay,
                    error,
                )
                await asyncio.sleep(delay)
                continue
            for task_id in view.assigned_task_ids:
                task = self.repository.get(task_id)
                assignees = ", ".join(task.assignees) if task is not None else "?"
                self.notifier.notify(task_id, f"assigned to {assignees}")
            if assigned:
                logger.info("Assignment turn assigned %d task(s)", assigned)
            return

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.settings.retry_max_seconds,
            self.settings.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _dispatch_progress(self, task_id: str, snapshot: ProgressSnapshot) -> None:
        for listener in self.progress_listeners:
            listener(task_id, snapshot)

    def _on_runner_finished(self, runner: TaskRunner) -> None:
        if self.runners.get(runner.task_id) is runner:
            del self.runners[runner.task_id]
        self._replace(frozen_task_ids=self._state.frozen_task_ids - {runner.task_id})
        self._sync_active()
        self._spawn(runner.release(), name=f"release:{runner.task.short_id}")

    def _spawn(self, coro: Any, *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _sync_active(self) -> None:
        self._replace(active_task_ids=frozenset(self.runners))

    def _replace(self, **changes: Any) -> None:
        self._state = dataclasses.replace(self._state, **changes)


async def _runner_call(task_id: str, action: str, call: Awaitable[None]) -> None:
    try:
        await call
    except Exception:
        logger.exception("Runner %s failed to %s", task_id[:8], action)
