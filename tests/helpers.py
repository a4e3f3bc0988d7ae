"""Test doubles and async helpers shared across test modules."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime

from taskplane.runtime.base import AdapterHooks, AdapterStartError, AdapterState
from taskplane.tasks.models import TaskCreator, TaskPriority, TaskStatus, TaskView


class FakeAdapter:
    """Runtime adapter double driven explicitly by the test."""

    def __init__(self, task: TaskView, hooks: AdapterHooks, *, fail_start: bool = False) -> None:
        self.task = task
        self.hooks = hooks
        self.fail_start = fail_start
        self.start_gate: asyncio.Event | None = None
        self.messages: list[str] = []
        self.calls: list[str] = []
        self._state = AdapterState.IDLE

    @property
    def state(self) -> AdapterState:
        return self._state

    async def start(self, task: TaskView) -> None:
        self.calls.append("start")
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.fail_start:
            self._state = AdapterState.FAILED
            raise AdapterStartError("image not found")
        self._state = AdapterState.RUNNING
        self.hooks.on_started(f"container-{task.short_id}")

    async def pause(self) -> None:
        if self._state is AdapterState.RUNNING:
            self.calls.append("pause")
            self._state = AdapterState.PAUSED

    async def resume(self, task: TaskView) -> None:
        if self._state is AdapterState.PAUSED:
            self.calls.append("resume")
            self.task = task
            self._state = AdapterState.RUNNING

    async def inject_message(self, text: str) -> None:
        self.messages.append(text)

    async def release(self) -> None:
        self.calls.append("release")

    def complete(self) -> None:
        self._state = AdapterState.COMPLETED
        self.hooks.on_complete()

    def fail(self, error: BaseException) -> None:
        self._state = AdapterState.FAILED
        self.hooks.on_error(error)


class FakeAdapterFactory:
    """Adapter factory that keeps every adapter it built, keyed by task id."""

    def __init__(self) -> None:
        self.adapters: dict[str, FakeAdapter] = {}
        self.fail_start_ids: set[str] = set()
        self.gate: asyncio.Event | None = None

    def __call__(self, task: TaskView, hooks: AdapterHooks) -> FakeAdapter:
        adapter = FakeAdapter(task, hooks, fail_start=task.task_id in self.fail_start_ids)
        adapter.start_gate = self.gate
        self.adapters[task.task_id] = adapter
        return adapter


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 5.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""

    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


def make_task(task_id: str = "task-0001-aaaa", title: str = "Draft announcement") -> TaskView:
    now = datetime.now(tz=UTC)
    return TaskView(
        task_id=task_id,
        title=title,
        description="",
        status=TaskStatus.ASSIGNED,
        priority=TaskPriority.NORMAL,
        created_by=TaskCreator.HUMAN,
        created_at=now,
        updated_at=now,
        leader_id="aria",
        assignees=["aria"],
    )
