"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from helpers import FakeAdapterFactory

from taskplane.config import SchedulerSettings
from taskplane.cron.store import CronStore
from taskplane.engine.assignment import RoundRobinAssigner
from taskplane.engine.notifications import RecordingNotifier
from taskplane.engine.scheduler import SchedulerLoop
from taskplane.runtime.sessions import SessionStore
from taskplane.tasks.repository import TaskRepository
from taskplane.tasks.signals import SignalQueue


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "taskplane.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[TaskRepository]:
    repository = TaskRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def signals(db_path: Path, repository: TaskRepository) -> Iterator[SignalQueue]:
    queue = SignalQueue(db_path)
    yield queue
    queue.close()


@pytest.fixture()
def cron_store(db_path: Path, repository: TaskRepository) -> Iterator[CronStore]:
    store = CronStore(db_path)
    yield store
    store.close()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def sessions(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "sessions")


@pytest.fixture()
def adapter_factory() -> FakeAdapterFactory:
    return FakeAdapterFactory()


@pytest.fixture()
def scheduler(
    repository: TaskRepository,
    signals: SignalQueue,
    adapter_factory: FakeAdapterFactory,
    notifier: RecordingNotifier,
    sessions: SessionStore,
) -> SchedulerLoop:
    return SchedulerLoop(
        repository=repository,
        signals=signals,
        adapter_factory=adapter_factory,
        assigner=RoundRobinAssigner(),
        notifier=notifier,
        sessions=sessions,
        executors=("aria", "bram"),
        settings=SchedulerSettings(
            tick_seconds=0.05,
            assignment_timeout_seconds=2.0,
            assignment_max_attempts=3,
            retry_base_seconds=0.001,
            retry_max_seconds=0.01,
        ),
    )
