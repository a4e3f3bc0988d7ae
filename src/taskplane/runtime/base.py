"""Runtime adapter contract shared by the in-process and sandboxed implementations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from taskplane.runtime.sync import ProgressSnapshot
from taskplane.tasks.models import TaskView


class AdapterState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


FINISHED_ADAPTER_STATES = frozenset({AdapterState.COMPLETED, AdapterState.FAILED})


class AdapterStartError(RuntimeError):
    """The execution environment could not be launched."""


class ExecutionError(RuntimeError):
    """Execution finished unsuccessfully, with captured diagnostics."""

    def __init__(self, message: str, *, transient: bool = False, diagnostics: str = "") -> None:
        super().__init__(message)
        self.transient = transient
        self.diagnostics = diagnostics


def _noop(*_: object) -> None:
    return None


@dataclass(slots=True)
class AdapterHooks:
    """Engine callbacks invoked by an adapter; all run on the event loop thread."""

    on_started: Callable[[str | None], None] = _noop
    on_progress: Callable[[ProgressSnapshot], None] = _noop
    on_artifact: Callable[[str], None] = _noop
    on_complete: Callable[[], None] = _noop
    on_error: Callable[[BaseException], None] = _noop


class RuntimeAdapter(Protocol):
    """Uniform lifecycle contract.

    ``start`` is called once and returns as soon as the environment is
    launched; ``pause``/``resume`` are no-ops when already in the target state.
    """

    @property
    def state(self) -> AdapterState: ...

    async def start(self, task: TaskView) -> None: ...

    async def pause(self) -> None: ...

    async def resume(self, task: TaskView) -> None: ...

    async def inject_message(self, text: str) -> None: ...

    async def release(self) -> None: ...


AdapterFactory = Callable[[TaskView, AdapterHooks], RuntimeAdapter]
