"""Task store: durable task records, audit events and the signal queue."""

from taskplane.tasks.models import (
    TaskCreate,
    TaskCreator,
    TaskPriority,
    TaskStatus,
    TaskView,
)
from taskplane.tasks.repository import TaskNotFoundError, TaskRepository
from taskplane.tasks.signals import Signal, SignalQueue, SignalType

__all__ = [
    "Signal",
    "SignalQueue",
    "SignalType",
    "TaskCreate",
    "TaskCreator",
    "TaskNotFoundError",
    "TaskPriority",
    "TaskRepository",
    "TaskStatus",
    "TaskView",
]
