"""Composition root: wires the task store, runtime adapters, scheduler, console and cron."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
import threading
from collections.abc import Callable

from taskplane.config import Settings
from taskplane.cron.scheduler import CronScheduler
from taskplane.cron.store import CronStore
from taskplane.engine.alignment import OperatorConsole
from taskplane.engine.assignment import AssignmentCollaborator, RoundRobinAssigner
from taskplane.engine.clock import ShiftClock
from taskplane.engine.notifications import LoggingNotifier, Notifier
from taskplane.engine.scheduler import SchedulerLoop
from taskplane.runtime.artifacts import GitHubRepoProvisioner
from taskplane.runtime.base import AdapterFactory, AdapterHooks, RuntimeAdapter
from taskplane.runtime.cli_collaborator import CliExecutionCollaborator
from taskplane.runtime.docker import DockerCli, DockerClient
from taskplane.runtime.execution import ExecutionCollaborator
from taskplane.runtime.local import InProcessAdapter
from taskplane.runtime.sandbox import SandboxAdapter, SandboxConfig
from taskplane.runtime.sessions import SessionStore
from taskplane.tasks.models import TaskView
from taskplane.tasks.repository import TaskRepository
from taskplane.tasks.signals import SignalQueue

logger = logging.getLogger(__name__)


def build_adapter_factory(
    settings: Settings,
    *,
    sessions: SessionStore,
    collaborator: ExecutionCollaborator | None = None,
    docker: DockerClient | None = None,
) -> AdapterFactory:
    """Adapter factory for the configured runtime mode."""

    runtime = settings.runtime
    if runtime.mode == "docker":
        sandbox = settings.sandbox
        config = SandboxConfig(
            image=sandbox.image,
            agent_command=sandbox.agent_command,
            tools_enabled=sandbox.tools_enabled,
            final_snapshot_grace_seconds=sandbox.final_snapshot_grace_seconds,
            stop_timeout_seconds=sandbox.stop_timeout_seconds,
            poll_interval_seconds=runtime.watch_poll_interval_seconds,
            stability_seconds=runtime.watch_stability_seconds,
            api_key=sandbox.api_key,
            base_url=sandbox.base_url,
            model=sandbox.model,
        )
        docker_client = docker or DockerCli(sandbox.docker_binary)
        artifacts = GitHubRepoProvisioner(
            token=settings.artifacts.github_token,
            org=settings.artifacts.github_org,
            api_base_url=settings.artifacts.api_base_url,
            repo_prefix=settings.artifacts.repo_prefix,
            timeout_seconds=settings.artifacts.request_timeout_seconds,
        )

        def sandbox_factory(task: TaskView, hooks: AdapterHooks) -> RuntimeAdapter:
            return SandboxAdapter(
                hooks=hooks,
                docker=docker_client,
                config=config,
                world_root=runtime.world_root,
                workspace_root=runtime.workspace_root,
                sessions=sessions,
                artifacts=artifacts,
            )

        return sandbox_factory

    execution = collaborator or CliExecutionCollaborator(command_template=runtime.agent_command)

    def in_process_factory(task: TaskView, hooks: AdapterHooks) -> RuntimeAdapter:
        return InProcessAdapter(
            hooks=hooks,
            collaborator=execution,
            sessions=sessions,
            world_root=runtime.world_root,
            max_child_contexts=runtime.max_child_contexts,
            watch_poll_interval_seconds=runtime.watch_poll_interval_seconds,
            watch_stability_seconds=runtime.watch_stability_seconds,
        )

    return in_process_factory


class ControlPlane:
    """One control-plane process: scheduler loop, cron scheduler and operator console."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        repository: TaskRepository,
        signals: SignalQueue,
        cron_store: CronStore,
        notifier: Notifier | None = None,
        adapter_factory: AdapterFactory | None = None,
        assigner: AssignmentCollaborator | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.signals = signals
        self.notifier = notifier or LoggingNotifier()
        self.sessions = SessionStore(settings.runtime.sessions_root)
        self.scheduler = SchedulerLoop(
            repository=repository,
            signals=signals,
            adapter_factory=adapter_factory
            or build_adapter_factory(settings, sessions=self.sessions),
            assigner=assigner or RoundRobinAssigner(),
            notifier=self.notifier,
            sessions=self.sessions,
            executors=settings.runtime.executors,
            settings=settings.scheduler,
        )
        self.console = OperatorConsole(
            scheduler=self.scheduler,
            repository=repository,
            signals=signals,
            notifier=self.notifier,
            world_root=settings.runtime.world_root,
        )
        self.cron = CronScheduler(
            store=cron_store,
            repository=repository,
            signals=signals,
            notifier=self.notifier,
            settings=settings.cron,
        )
        self.clock = ShiftClock(
            signals=signals,
            work_seconds=settings.scheduler.shift_work_seconds,
            rest_seconds=settings.scheduler.shift_rest_seconds,
        )

    def revise(self, task_id: str, feedback: str) -> TaskView | None:
        """Re-run a finished task; refused while a runner is active for it."""

        return self.scheduler.revise(task_id, feedback)

    async def run(
        self,
        stop: asyncio.Event,
        *,
        read_line: Callable[[], str] | None = None,
        emit: Callable[[str], None] = print,
    ) -> None:
        """Run until ``stop`` is set; ``read_line``, when given, feeds the operator console."""

        self.settings.runtime.world_root.mkdir(parents=True, exist_ok=True)
        logger.info(
            "Control plane starting: mode=%s tick=%.1fs executors=%s",
            self.settings.runtime.mode,
            self.settings.scheduler.tick_seconds,
            ",".join(self.settings.runtime.executors),
        )
        await self.cron.start()
        clock = asyncio.get_running_loop().create_task(self.clock.run(stop), name="shift-clock")
        console: asyncio.Task[None] | None = None
        if read_line is not None:
            console = asyncio.get_running_loop().create_task(
                self._console_loop(stop, read_line, emit),
                name="operator-console",
            )
        try:
            await self.scheduler.run_forever(stop)
        finally:
            clock.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await clock
            if console is not None:
                console.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await console
            await self.cron.stop()
            await self.scheduler.shutdown()
            logger.info("Control plane stopped")

    async def _console_loop(
        self,
        stop: asyncio.Event,
        read_line: Callable[[], str],
        emit: Callable[[str], None],
    ) -> None:
        loop = asyncio.get_running_loop()
        lines: asyncio.Queue[str] = asyncio.Queue()

        def pump() -> None:
            while True:
                line = read_line()
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(lines.put_nowait, line)
                if line == "":
                    return

        # Daemon: a pending stdin read must not block process exit.
        threading.Thread(target=pump, name="operator-console", daemon=True).start()
        while not stop.is_set():
            line = await lines.get()
            if line == "":
                return
            if line.strip() in {"/quit", "/exit"}:
                stop.set()
                return
            for output in await self.console.handle(line):
                emit(output)


def stdin_reader() -> str:
    return sys.stdin.readline()
