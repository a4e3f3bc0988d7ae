"""Domain models for the task store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
REVISABLE_STATUSES = TERMINAL_STATUSES


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Sort key where the most urgent priority comes first."""

        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.NORMAL: 2,
    TaskPriority.LOW: 3,
}


class TaskCreator(str, Enum):
    HUMAN = "human"
    PLANNER = "internal-planner"
    CRON = "cron"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL
    created_by: TaskCreator = TaskCreator.HUMAN
    task_id: str | None = None
    dependencies: tuple[str, ...] = ()
    requires_plan_approval: bool = False
    parent_id: str | None = None
    external_thread_ref: str | None = None
    max_assignees: int | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for the engine, collaborators and CLI."""

    task_id: str
    title: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    created_by: TaskCreator
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    leader_id: str | None = None
    assignees: list[str] = field(default_factory=list)
    parent_id: str | None = None
    max_assignees: int | None = None
    dependencies: list[str] = field(default_factory=list)
    requires_plan_approval: bool = False
    revision_count: int = 0
    revision_note: str | None = None
    sandbox_handle: str | None = None
    sandbox_artifact_ref: str | None = None
    external_thread_ref: str | None = None
    error_summary: str | None = None

    @property
    def short_id(self) -> str:
        return self.task_id[:8]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class TaskEventView:
    """Audit event emitted for one task mutation."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    details: dict[str, Any]
    created_at: datetime
