"""Controllers for taskplane CLI commands."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskplane.config import Settings
from taskplane.cron.models import (
    AtSchedule,
    CronExprSchedule,
    CronJob,
    CronRuntime,
    EverySchedule,
    InlinePayload,
    Payload,
    Schedule,
    TaskPayload,
)
from taskplane.cron.scheduler import CronScheduler
from taskplane.cron.store import CronStore
from taskplane.engine.control_plane import ControlPlane, stdin_reader
from taskplane.engine.notifications import RecordingNotifier
from taskplane.runtime.sync import TaskPaths, read_progress
from taskplane.storage.common import from_epoch_ms, to_iso
from taskplane.tasks.models import TaskCreate, TaskPriority, TaskStatus
from taskplane.tasks.repository import TaskRepository
from taskplane.tasks.signals import SignalQueue, SignalType

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DURATION_UNITS_MS = {"ms": 1, "s": 1_000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}


@dataclass(slots=True)
class StartCommand:
    """CLI input for running the control plane."""

    db_path: Path | None
    world_root: Path | None
    log_level: str = "INFO"
    interactive: bool = True


@dataclass(slots=True)
class TaskAddCommand:
    db_path: Path | None
    title: str
    description: str
    priority: str


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskShowCommand:
    db_path: Path | None
    world_root: Path | None
    task_id: str


@dataclass(slots=True)
class TaskReviseCommand:
    db_path: Path | None
    task_id: str
    feedback: str


@dataclass(slots=True)
class SignalCommand:
    """CLI input for freeze/resume/rest signals sent to a running control plane."""

    db_path: Path | None
    task_id: str | None = None


@dataclass(slots=True)
class StatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class CronAddCommand:
    """CLI input for creating a cron job; exactly one of at/every/cron_expr is set."""

    db_path: Path | None
    name: str
    at: str | None
    every: str | None
    cron_expr: str | None
    tz: str | None
    runtime: str
    title: str | None
    description: str
    priority: str
    script: str
    keep: bool
    disabled: bool


@dataclass(slots=True)
class CronJobCommand:
    """CLI input for remove/enable/disable/run of one cron job."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class CronHistoryCommand:
    db_path: Path | None
    job_id: str | None
    limit: int


@dataclass(slots=True)
class _Stores:
    repository: TaskRepository
    signals: SignalQueue
    cron: CronStore


class TaskplaneCliController:
    """CLI-facing controller; every method returns printable lines."""

    def start(self, command: StartCommand) -> list[str]:
        logging.basicConfig(level=command.log_level.upper(), format=LOG_FORMAT)
        settings = Settings.from_env(db_path=command.db_path, world_root=command.world_root)
        settings.validate()
        with _stores(settings) as stores:
            plane = ControlPlane(
                settings=settings,
                repository=stores.repository,
                signals=stores.signals,
                cron_store=stores.cron,
            )
            asyncio.run(_serve(plane, interactive=command.interactive))
        return ["Control plane stopped."]

    def add_task(self, command: TaskAddCommand) -> list[str]:
        title = command.title.strip()
        if not title:
            raise ValueError("Task title must not be empty.")
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            task = stores.repository.enqueue(
                TaskCreate(
                    title=title,
                    description=command.description,
                    priority=TaskPriority(command.priority.lower()),
                ),
            )
            stores.signals.append(SignalType.TASK_ADDED, {"taskId": task.task_id})
        return [
            f"Task queued: {task.task_id}",
            f"  title={task.title} priority={task.priority.value} status={task.status.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = TaskStatus(command.status.lower()) if command.status else None
        with _stores(settings) as stores:
            tasks = stores.repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.short_id} status={task.status.value} priority={task.priority.value} "
                f"assignees={','.join(task.assignees) or '-'} title={task.title}",
            )
        return lines

    def show_task(self, command: TaskShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, world_root=command.world_root)
        with _stores(settings) as stores:
            task = stores.repository.require(command.task_id)
            events = stores.repository.list_events(task_id=task.task_id)

        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Created by: {task.created_by.value}",
            f"Leader: {task.leader_id or '-'}",
            f"Assignees: {', '.join(task.assignees) or '-'}",
            f"Revisions: {task.revision_count}",
        ]
        if task.description:
            lines.append(f"Description: {task.description}")
        if task.revision_note:
            lines.append(f"Revision note: {task.revision_note}")
        if task.sandbox_artifact_ref:
            lines.append(f"Artifact: {task.sandbox_artifact_ref}")
        if task.error_summary:
            lines.append(f"Error: {task.error_summary}")

        snapshot = read_progress(TaskPaths(settings.runtime.world_root, task.task_id).progress)
        if snapshot is not None:
            lines.append(
                f"Progress: {snapshot.status.value} {snapshot.percent_complete}% "
                f"{snapshot.summary}".rstrip(),
            )
            if snapshot.question:
                lines.append(f"Question: {snapshot.question}")

        lines.append(f"Events: {len(events)}")
        for event in events:
            transition = ""
            if event.status_to is not None:
                before = event.status_from.value if event.status_from else "-"
                transition = f" {before}->{event.status_to.value}"
            lines.append(f"  {event.created_at.isoformat()} {event.event_type}{transition}")
        return lines

    def revise_task(self, command: TaskReviseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            task = stores.repository.require(command.task_id)
            revised = stores.repository.revise_task(
                task_id=task.task_id,
                feedback=command.feedback,
            )
            if revised is None:
                raise RuntimeError(
                    f"Task {task.short_id} is {task.status.value}; only completed or failed "
                    "tasks can be revised.",
                )
            stores.signals.append(SignalType.TASK_ADDED, {"taskId": revised.task_id})
        return [f"Task revised: {revised.task_id} revision={revised.revision_count}"]

    def freeze(self, command: SignalCommand) -> list[str]:
        return self._send(command, SignalType.FREEZE)

    def resume(self, command: SignalCommand) -> list[str]:
        return self._send(command, SignalType.RESUME)

    def rest(self, command: SignalCommand) -> list[str]:
        return self._send(command, SignalType.REST_START)

    def day_end(self, command: SignalCommand) -> list[str]:
        return self._send(command, SignalType.DAY_END)

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            counts = stores.repository.summary()
            pending_signals = stores.signals.pending()
            jobs = stores.cron.list_jobs()

        total = sum(counts.values())
        lines = [f"Tasks: {total}"]
        for status, count in counts.items():
            if count:
                lines.append(f"  {status.value}: {count}")
        lines.append(f"Pending signals: {len(pending_signals)}")
        for item in pending_signals:
            scope = item.task_id[:8] if item.task_id else "global"
            lines.append(f"  {item.signal_type.value} {scope}")
        enabled = sum(1 for job in jobs if job.enabled)
        lines.append(f"Cron jobs: {len(jobs)} ({enabled} enabled)")
        return lines

    def add_cron(self, command: CronAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        schedule = _parse_schedule(command)
        runtime = CronRuntime(command.runtime.lower())
        payload: Payload
        if runtime is CronRuntime.TASK:
            payload = TaskPayload(
                title=(command.title or command.name).strip(),
                description=command.description,
                priority=TaskPriority(command.priority.lower()),
            )
        else:
            payload = InlinePayload(description=command.description, script=command.script)
        with _stores(settings) as stores:
            job = stores.cron.add(
                name=command.name,
                schedule=schedule,
                runtime=runtime,
                payload=payload,
                enabled=not command.disabled,
                description=command.description or None,
                delete_after_run=False if command.keep else None,
            )

        lines = [f"Cron job added: {job.job_id}", _describe_job(job)]
        if runtime is CronRuntime.INLINE:
            job_dir = settings.cron.jobs_root / job.job_id
            job_dir.mkdir(parents=True, exist_ok=True)
            lines.append(f"  script: {job_dir / command.script}")
        return lines

    def list_cron(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            jobs = stores.cron.list_jobs()
        lines = [f"Cron jobs: {len(jobs)}"]
        lines.extend(_describe_job(job) for job in jobs)
        return lines

    def remove_cron(self, command: CronJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            if not stores.cron.remove(command.job_id):
                raise RuntimeError(f"Cron job not found: {command.job_id}")
        return [f"Cron job removed: {command.job_id}"]

    def enable_cron(self, command: CronJobCommand) -> list[str]:
        return self._toggle_cron(command, enabled=True)

    def disable_cron(self, command: CronJobCommand) -> list[str]:
        return self._toggle_cron(command, enabled=False)

    def run_cron(self, command: CronJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        notifier = RecordingNotifier()
        with _stores(settings) as stores:
            scheduler = CronScheduler(
                store=stores.cron,
                repository=stores.repository,
                signals=stores.signals,
                notifier=notifier,
                settings=settings.cron,
            )
            run = asyncio.run(scheduler.fire_now(command.job_id))
        if run is None:
            raise RuntimeError(f"Cron job not found: {command.job_id}")

        lines = [f"Cron run #{run.run_id}: {run.status.value}"]
        if run.task_id:
            lines.append(f"  task={run.task_id}")
        if run.output:
            lines.append(run.output)
        if run.error:
            lines.append(f"  error={run.error}")
        return lines

    def cron_history(self, command: CronHistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            job_id = None
            if command.job_id:
                job = stores.cron.get(command.job_id)
                if job is None:
                    raise RuntimeError(f"Cron job not found: {command.job_id}")
                job_id = job.job_id
            runs = stores.cron.list_runs(job_id, limit=command.limit)

        lines = [f"Cron runs: {len(runs)}"]
        for run in runs:
            duration = (run.finished_at - run.started_at).total_seconds()
            line = (
                f"  #{run.run_id} {run.started_at.isoformat()} {run.job_name} "
                f"{run.status.value} {duration:.1f}s"
            )
            if run.manual:
                line += " manual"
            if run.task_id:
                line += f" task={run.task_id[:8]}"
            if run.error:
                line += f" error={run.error.splitlines()[0][:120]}"
            lines.append(line)
        return lines

    def _send(self, command: SignalCommand, signal_type: SignalType) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            payload = None
            if command.task_id:
                task = stores.repository.require(command.task_id)
                payload = {"taskId": task.task_id}
            stores.signals.append(signal_type, payload)
        scope = payload["taskId"] if payload else "global"
        return [f"Signal queued: {signal_type.value} ({scope})"]

    def _toggle_cron(self, command: CronJobCommand, *, enabled: bool) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            job = stores.cron.update(command.job_id, enabled=enabled)
        if job is None:
            raise RuntimeError(f"Cron job not found: {command.job_id}")
        return [f"Cron job {'enabled' if enabled else 'disabled'}: {job.job_id}"]


async def _serve(plane: ControlPlane, *, interactive: bool) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop.set)
    await plane.run(stop, read_line=stdin_reader if interactive else None)


def parse_duration_ms(raw: str) -> int:
    """Parse ``90s``, ``15m``, ``2h``, ``1d`` or a bare number of seconds into ms."""

    value = raw.strip().lower()
    for unit in ("ms", "s", "m", "h", "d"):
        if value.endswith(unit) and value[: -len(unit)].strip().replace(".", "", 1).isdigit():
            amount = float(value[: -len(unit)])
            break
    else:
        if not value.replace(".", "", 1).isdigit():
            raise ValueError(f"Invalid duration: {raw!r} (expected e.g. 30s, 15m, 2h, 1d)")
        amount, unit = float(value), "s"
    every_ms = int(amount * _DURATION_UNITS_MS[unit])
    if every_ms <= 0:
        raise ValueError("Interval must be > 0.")
    return every_ms


def _parse_schedule(command: CronAddCommand) -> Schedule:
    given = [value for value in (command.at, command.every, command.cron_expr) if value]
    if len(given) != 1:
        raise ValueError("Pass exactly one of --at, --every or --cron.")
    if command.at:
        return AtSchedule(at=command.at)
    if command.every:
        return EverySchedule(every_ms=parse_duration_ms(command.every))
    return CronExprSchedule(expr=str(command.cron_expr).strip(), tz=command.tz)


def _describe_job(job: CronJob) -> str:
    schedule = job.schedule
    if isinstance(schedule, AtSchedule):
        when = f"at {schedule.at}"
    elif isinstance(schedule, EverySchedule):
        when = f"every {schedule.every_ms // 1000}s"
    else:
        when = f"cron '{schedule.expr}'" + (f" {schedule.tz}" if schedule.tz else "")
    state = job.state
    next_run = to_iso(from_epoch_ms(state.next_run_at_ms)) if state.next_run_at_ms else "-"
    last = state.last_status.value if state.last_status else "-"
    return (
        f"  {job.short_id} {job.name} [{when}] runtime={job.runtime.value} "
        f"enabled={'yes' if job.enabled else 'no'} next={next_run} last={last} "
        f"runs={state.run_count}"
    )


@contextmanager
def _stores(settings: Settings) -> Iterator[_Stores]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    signals = SignalQueue(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    cron = CronStore(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    try:
        yield _Stores(repository=repository, signals=signals, cron=cron)
    finally:
        cron.close()
        signals.close()
        repository.close()
