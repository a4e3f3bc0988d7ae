"""Execution task tree: typed messages over channels between bounded contexts.

A root :class:`ExecutionContext` drives one collaborator turn. It may spawn a
bounded number of child contexts; each child's final result is delivered only
to its direct parent's channel, never further up the tree.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionStarted:
    session_id: str


@dataclass(frozen=True, slots=True)
class AssistantText:
    text: str


@dataclass(frozen=True, slots=True)
class Checkpointed:
    session_id: str
    description: str = ""


@dataclass(frozen=True, slots=True)
class ChildResult:
    context_id: str
    ok: bool
    output: str


@dataclass(frozen=True, slots=True)
class TurnCompleted:
    ok: bool
    output: str = ""
    session_id: str | None = None


ExecutionMessage = SessionStarted | AssistantText | Checkpointed | ChildResult | TurnCompleted

ChildWork = Callable[["ExecutionContext"], Awaitable[str]]


class ChildLimitError(RuntimeError):
    """Raised when a context tries to exceed its child budget."""


class ExecutionContext:
    """One node of the execution tree with its own inbound message channel."""

    def __init__(
        self,
        context_id: str,
        *,
        parent: ExecutionContext | None = None,
        max_children: int = 4,
        max_depth: int = 2,
    ) -> None:
        self.context_id = context_id
        self.parent = parent
        self.max_children = max_children
        self.max_depth = max_depth
        self.depth = 0 if parent is None else parent.depth + 1
        self.channel: asyncio.Queue[ExecutionMessage] = asyncio.Queue()
        self._children: dict[str, asyncio.Task[None]] = {}

    @property
    def active_children(self) -> int:
        return sum(1 for task in self._children.values() if not task.done())

    async def emit(self, message: ExecutionMessage) -> None:
        await self.channel.put(message)

    def spawn_child(self, name: str, work: ChildWork) -> ExecutionContext:
        if self.depth >= self.max_depth:
            raise ChildLimitError(f"{self.context_id}: maximum nesting depth reached")
        if self.active_children >= self.max_children:
            raise ChildLimitError(
                f"{self.context_id}: at most {self.max_children} concurrent children",
            )
        child = ExecutionContext(
            f"{self.context_id}/{name}",
            parent=self,
            max_children=self.max_children,
            max_depth=self.max_depth,
        )
        self._children[child.context_id] = asyncio.get_running_loop().create_task(
            child._run(self, work),
            name=f"execution:{child.context_id}",
        )
        return child

    async def wait_children(self) -> None:
        pending = [task for task in self._children.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel(self) -> None:
        """Cancel every descendant context."""

        for task in self._children.values():
            task.cancel()
        for task in self._children.values():
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self, parent: ExecutionContext, work: ChildWork) -> None:
        try:
            output = await work(self)
            result = ChildResult(context_id=self.context_id, ok=True, output=output)
        except asyncio.CancelledError:
            await self.cancel()
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Child context %s failed: %s", self.context_id, error)
            result = ChildResult(context_id=self.context_id, ok=False, output=str(error))
        await self.wait_children()
        await parent.emit(result)


@dataclass(slots=True)
class ExecutionRequest:
    """Everything a collaborator needs for one turn."""

    task_id: str
    prompt: str
    workdir: Path
    session_id: str | None = None


class ExecutionCollaborator(Protocol):
    """External reasoning/execution collaborator driven by the in-process adapter.

    Intermediate messages go to ``context``; the final turn result is returned.
    Cancellation must stop the underlying work promptly.
    """

    async def run(self, context: ExecutionContext, request: ExecutionRequest) -> TurnCompleted: ...
