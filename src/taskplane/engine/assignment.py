"""Seam to the external assignment collaborator and the built-in round-robin fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from taskplane.tasks.models import TaskStatus, TaskView
from taskplane.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExecutorView:
    name: str
    busy: bool


class AssignmentView:
    """Read/write window over the task store handed to an assignment collaborator.

    It exposes exactly what a planner needs: pending tasks, executors with
    their busy flags, free-text operator messages queued since the last turn,
    and the ``assign`` write path. How the decision is made is up to the
    collaborator.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        executors: tuple[str, ...],
        operator_messages: tuple[str, ...] = (),
    ) -> None:
        self._repository = repository
        self._executors = executors
        self.operator_messages = operator_messages
        self.assigned_task_ids: list[str] = []

    def pending_tasks(self) -> list[TaskView]:
        return self._repository.list_by_status(TaskStatus.PENDING)

    def executors(self) -> list[ExecutorView]:
        busy = self._repository.busy_assignees()
        return [ExecutorView(name=name, busy=name in busy) for name in self._executors]

    def assign(self, task_id: str, assignees: list[str], *, leader_id: str | None = None) -> bool:
        assigned = self._repository.assign(
            task_id=task_id,
            assignees=assignees,
            leader_id=leader_id,
        )
        if assigned:
            self.assigned_task_ids.append(task_id)
        return assigned


class AssignmentCollaborator(Protocol):
    async def assign(self, view: AssignmentView) -> int:
        """Assign what it can and return the number of tasks assigned."""
        ...


class RoundRobinAssigner:
    """Hands pending tasks, most urgent first, to free executors in rotation.

    A task stays ``pending`` when every executor is busy.
    """

    def __init__(self) -> None:
        self._cursor = 0

    async def assign(self, view: AssignmentView) -> int:
        executors = view.executors()
        if not executors:
            return 0
        start = self._cursor % len(executors)
        rotation = executors[start:] + executors[:start]
        free = [executor.name for executor in rotation if not executor.busy]
        count = 0
        for task in view.pending_tasks():
            if not free:
                break
            name = free.pop(0)
            if view.assign(task.task_id, [name], leader_id=name):
                logger.info("Auto-assigned task %s to %s", task.short_id, name)
                count += 1
                self._cursor += 1
        return count
