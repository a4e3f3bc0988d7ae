"""Task runner: owns one runtime adapter and mirrors its outcome into the task store."""

from __future__ import annotations

import logging
from collections.abc import Callable

from taskplane.engine.notifications import Notifier
from taskplane.runtime.base import (
    FINISHED_ADAPTER_STATES,
    AdapterFactory,
    AdapterHooks,
    AdapterStartError,
    AdapterState,
    ExecutionError,
)
from taskplane.runtime.failure_classifier import (
    FailureClassification,
    classify_exception,
    classify_failure,
)
from taskplane.runtime.sync import ProgressSnapshot
from taskplane.tasks.models import TaskStatus, TaskView
from taskplane.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)

DIAGNOSTICS_TAIL_CHARS = 1_500

ProgressListener = Callable[[str, ProgressSnapshot], None]
FinishedListener = Callable[["TaskRunner"], None]


class TaskRunner:
    """One runner per active task id.

    The runner writes ``in-progress`` when it starts the adapter and the
    terminal status when the adapter reports an outcome, then hands itself to
    ``on_finished`` so the scheduler can evict it from the registry.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        adapter_factory: AdapterFactory,
        repository: TaskRepository,
        notifier: Notifier,
        on_progress: ProgressListener | None = None,
        on_finished: FinishedListener | None = None,
    ) -> None:
        self.task = task
        self.repository = repository
        self.notifier = notifier
        self._on_progress_listener = on_progress
        self._on_finished_listener = on_finished
        self._finished = False
        self.adapter = adapter_factory(
            task,
            AdapterHooks(
                on_started=self._on_started,
                on_progress=self._on_progress,
                on_artifact=self._on_artifact,
                on_complete=self._on_complete,
                on_error=self._on_error,
            ),
        )

    @property
    def task_id(self) -> str:
        return self.task.task_id

    @property
    def is_running(self) -> bool:
        return self.adapter.state is AdapterState.RUNNING

    @property
    def is_paused(self) -> bool:
        return self.adapter.state is AdapterState.PAUSED

    @property
    def is_finished(self) -> bool:
        return self._finished or self.adapter.state in FINISHED_ADAPTER_STATES

    async def start(self, *, recovered: bool = False) -> None:
        """Launch the adapter; start failures fail the task immediately, without retry."""

        if self.task.status is not TaskStatus.IN_PROGRESS:
            self.repository.update_status(task_id=self.task_id, status=TaskStatus.IN_PROGRESS)
        try:
            await self.adapter.start(self.task)
        except AdapterStartError as error:
            self._fail(str(error), diagnostics="", failure=classify_exception(error))
            return
        except Exception as error:  # noqa: BLE001
            logger.exception("Adapter start raised for task %s", self.task.short_id)
            self._fail(
                f"adapter start failed: {type(error).__name__}: {error}",
                diagnostics="",
                failure=classify_exception(error),
            )
            return
        if recovered:
            self.notifier.notify(self.task_id, "recovered after restart, resuming from session")

    async def pause(self) -> None:
        if not self.is_running:
            return
        await self.adapter.pause()
        self.notifier.notify(self.task_id, "paused")

    async def resume(self) -> None:
        if not self.is_paused:
            return
        task = self.repository.get(self.task_id) or self.task
        self.task = task
        await self.adapter.resume(task)
        self.notifier.notify(self.task_id, "resumed")

    async def inject_message(self, text: str) -> None:
        await self.adapter.inject_message(text)

    async def release(self) -> None:
        await self.adapter.release()

    def _on_started(self, handle: str | None) -> None:
        if handle:
            self.repository.set_sandbox_handle(task_id=self.task_id, handle=handle)
        self.notifier.notify(self.task_id, f"started: {self.task.title}")

    def _on_progress(self, snapshot: ProgressSnapshot) -> None:
        logger.debug(
            "Progress for %s: %s %s%%",
            self.task.short_id,
            snapshot.status.value,
            snapshot.percent_complete,
        )
        if self._on_progress_listener is not None:
            self._on_progress_listener(self.task_id, snapshot)

    def _on_artifact(self, ref: str) -> None:
        self.repository.set_artifact_ref(task_id=self.task_id, ref=ref)
        self.notifier.notify(self.task_id, f"artifact: {ref}")

    def _on_complete(self) -> None:
        if self._finished:
            return
        self.repository.update_status(task_id=self.task_id, status=TaskStatus.COMPLETED)
        logger.info("Task %s completed", self.task.short_id)
        self.notifier.notify(self.task_id, "completed")
        self._finish()

    def _on_error(self, error: BaseException) -> None:
        if self._finished:
            return
        diagnostics = error.diagnostics if isinstance(error, ExecutionError) else ""
        reason = str(error) or type(error).__name__
        self._fail(
            reason,
            diagnostics=diagnostics,
            failure=classify_failure(text=f"{reason}\n{diagnostics}"),
        )

    def _fail(self, reason: str, *, diagnostics: str, failure: FailureClassification) -> None:
        self.repository.update_status(
            task_id=self.task_id,
            status=TaskStatus.FAILED,
            error_summary=reason,
            failure_details=failure.to_event_details(),
        )
        logger.error(
            "Task %s failed (%s): %s",
            self.task.short_id,
            failure.failure_class.value,
            reason,
        )
        message = f"failed: {reason}"
        if diagnostics.strip():
            message += f"\n{diagnostics.strip()[-DIAGNOSTICS_TAIL_CHARS:]}"
        self.notifier.notify(self.task_id, message)
        self._finish()

    def _finish(self) -> None:
        self._finished = True
        if self._on_finished_listener is not None:
            self._on_finished_listener(self)
