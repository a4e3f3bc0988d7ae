"""Containerized sandbox runtime adapter."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from taskplane.runtime.artifacts import ArtifactProvisioner
from taskplane.runtime.base import (
    AdapterHooks,
    AdapterStartError,
    AdapterState,
    ExecutionError,
)
from taskplane.runtime.docker import DockerClient, DockerCommandError, Mount
from taskplane.runtime.sessions import SessionStore
from taskplane.runtime.sync import (
    ProgressSnapshot,
    ProgressStatus,
    TaskPaths,
    append_inbox,
    read_progress,
)
from taskplane.runtime.watcher import FileSignature, ProgressWatcher, file_signature
from taskplane.tasks.models import TaskView

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"
CONTAINER_WORLD = f"{CONTAINER_WORKSPACE}/world"
CONTAINER_ENTRYPOINT = f"{CONTAINER_WORKSPACE}/entrypoint.py"
ENTRYPOINT_SCRIPT = Path(__file__).resolve().parents[1] / "sandbox" / "entrypoint.py"
CONTAINER_NAME_PREFIX = "taskplane-"
LOG_TAIL_LINES = 200


@dataclass(slots=True)
class SandboxConfig:
    image: str
    agent_command: str
    tools_enabled: bool = True
    final_snapshot_grace_seconds: float = 10.0
    stop_timeout_seconds: int = 10
    poll_interval_seconds: float = 0.2
    stability_seconds: float = 0.2
    api_key: str | None = None
    base_url: str | None = None
    model: str | None = None


def container_name(task_id: str) -> str:
    return f"{CONTAINER_NAME_PREFIX}{task_id[:8]}"


def build_mounts(task: TaskView, *, world_root: Path, workspace_root: Path) -> list[Mount]:
    """The complete, enumerated set of host paths a sandbox can reach."""

    paths = TaskPaths(world_root, task.task_id)
    mounts = [
        Mount(paths.task_dir, f"{CONTAINER_WORLD}/tasks/{task.task_id}"),
    ]
    for actor in task.assignees:
        mounts.append(
            Mount(world_root / "actors" / actor, f"{CONTAINER_WORLD}/actors/{actor}"),
        )
    mounts.append(Mount(world_root / "shared", f"{CONTAINER_WORLD}/shared", read_only=True))
    mounts.append(
        Mount(
            world_root / "memory" / "world.json",
            f"{CONTAINER_WORLD}/memory/world.json",
            read_only=True,
            is_file=True,
        ),
    )
    agents_md = workspace_root / "AGENTS.md"
    if agents_md.is_file():
        mounts.append(
            Mount(agents_md, f"{CONTAINER_WORKSPACE}/AGENTS.md", read_only=True, is_file=True),
        )
    mounts.append(Mount(ENTRYPOINT_SCRIPT, CONTAINER_ENTRYPOINT, read_only=True, is_file=True))
    return mounts


def prepare_host_paths(mounts: list[Mount]) -> None:
    """Create host mount points up front so docker never creates root-owned ones."""

    for mount in mounts:
        if mount.is_file:
            mount.host.parent.mkdir(parents=True, exist_ok=True)
            if not mount.host.exists():
                mount.host.write_text(json.dumps({}), "utf-8")
        else:
            mount.host.mkdir(parents=True, exist_ok=True)


def evaluate_exit(exit_code: int, snapshot: ProgressSnapshot | None) -> tuple[bool, str]:
    """Exit 0 is necessary but not sufficient: the final snapshot must say ``completed``."""

    if exit_code != 0:
        return False, f"container exited with code {exit_code}"
    if snapshot is None:
        return False, "container exited 0 without writing a progress snapshot"
    if snapshot.status is not ProgressStatus.COMPLETED:
        return False, f"container exited 0 but last progress status was {snapshot.status.value!r}"
    return True, "completed"


class SandboxAdapter:
    """Runs one task inside a detached container and observes it through the sync files."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        hooks: AdapterHooks,
        docker: DockerClient,
        config: SandboxConfig,
        world_root: Path,
        workspace_root: Path,
        sessions: SessionStore,
        artifacts: ArtifactProvisioner | None = None,
    ) -> None:
        self.hooks = hooks
        self.docker = docker
        self.config = config
        self.world_root = world_root
        self.workspace_root = workspace_root
        self.sessions = sessions
        self.artifacts = artifacts
        self._state = AdapterState.IDLE
        self._paths: TaskPaths | None = None
        self._container: str | None = None
        self._watcher: ProgressWatcher | None = None
        self._exit_watch: asyncio.Task[None] | None = None
        self._baseline: FileSignature | None = None
        self._artifact_ref: str | None = None
        self._releasing = False

    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def container(self) -> str | None:
        return self._container

    async def start(self, task: TaskView) -> None:
        if self._state is not AdapterState.IDLE:
            raise RuntimeError(f"Adapter for {task.short_id} was already started.")
        paths = TaskPaths(self.world_root, task.task_id)
        self._paths = paths
        mounts = build_mounts(task, world_root=self.world_root, workspace_root=self.workspace_root)
        prepare_host_paths(mounts)

        self._artifact_ref = task.sandbox_artifact_ref
        if self._artifact_ref is None and self.artifacts is not None:
            self._artifact_ref = await self.artifacts.ensure(task)
            if self._artifact_ref:
                self.hooks.on_artifact(self._artifact_ref)

        name = container_name(task.task_id)
        with contextlib.suppress(DockerCommandError):
            await self.docker.remove(name)

        self._baseline = file_signature(paths.progress)
        self._watcher = ProgressWatcher(
            paths.progress,
            functools.partial(self._handle_progress, task.task_id),
            poll_interval_seconds=self.config.poll_interval_seconds,
            stability_seconds=self.config.stability_seconds,
        )
        try:
            container = await self.docker.run_detached(
                name=name,
                image=self.config.image,
                mounts=mounts,
                env=self._container_env(task),
                command=["python3", CONTAINER_ENTRYPOINT],
                workdir=f"{CONTAINER_WORLD}/tasks/{task.task_id}",
            )
        except DockerCommandError as error:
            self._state = AdapterState.FAILED
            raise AdapterStartError(
                f"Sandbox for {task.short_id} failed to launch: {error}",
            ) from error

        self._container = container
        self._state = AdapterState.RUNNING
        logger.info("Sandbox %s started for task %s", name, task.short_id)
        self.hooks.on_started(container)
        self._watcher.start()
        self._exit_watch = asyncio.get_running_loop().create_task(
            self._await_exit(task, paths, container),
            name=f"sandbox-wait:{task.short_id}",
        )

    async def pause(self) -> None:
        if self._state is not AdapterState.RUNNING or self._container is None:
            return
        await self.docker.pause(self._container)
        self._state = AdapterState.PAUSED

    async def resume(self, task: TaskView) -> None:
        if self._state is not AdapterState.PAUSED or self._container is None:
            return
        await self.docker.unpause(self._container)
        self._state = AdapterState.RUNNING

    async def inject_message(self, text: str) -> None:
        if self._paths is None:
            raise RuntimeError("Cannot inject a message before the adapter is started.")
        append_inbox(self._paths, text)

    async def release(self) -> None:
        self._releasing = True
        if self._container is not None and self._state in {
            AdapterState.RUNNING,
            AdapterState.PAUSED,
        }:
            try:
                if self._state is AdapterState.PAUSED:
                    await self.docker.unpause(self._container)
                await self.docker.stop(
                    self._container,
                    timeout_seconds=self.config.stop_timeout_seconds,
                )
            except DockerCommandError as error:
                logger.warning("Failed to stop sandbox %s: %s", self._container, error)
        if self._exit_watch is not None:
            self._exit_watch.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._exit_watch
        if self._watcher is not None:
            await self._watcher.stop()

    def _container_env(self, task: TaskView) -> dict[str, str]:
        env = {
            "TASK_ID": task.task_id,
            "TASK_TITLE": quote(task.title, safe=""),
            "TASK_DESCRIPTION": quote(task.description, safe=""),
            "LEADER_ID": task.leader_id or "",
            "ASSIGNED_TO": ",".join(task.assignees),
            "TASK_REVISION_NOTE": quote(task.revision_note or "", safe=""),
            "AGENT_COMMAND": self.config.agent_command,
            "SANDBOX_TOOLS_ENABLED": "1" if self.config.tools_enabled else "0",
            "SANDBOX_ARTIFACT_REF": self._artifact_ref or "",
            "TASK_WORKDIR": f"{CONTAINER_WORLD}/tasks/{task.task_id}",
        }
        session_id = self.sessions.read(task.task_id)
        if session_id:
            env["SESSION_ID"] = session_id
        if self.config.api_key:
            env["AGENT_API_KEY"] = self.config.api_key
        if self.config.base_url:
            env["AGENT_BASE_URL"] = self.config.base_url
        if self.config.model:
            env["AGENT_MODEL"] = self.config.model
        return env

    def _handle_progress(self, task_id: str, snapshot: ProgressSnapshot) -> None:
        session_id = snapshot.latest_session_id
        if session_id:
            self.sessions.write(task_id, session_id)
        if snapshot.artifact_ref and snapshot.artifact_ref != self._artifact_ref:
            self._artifact_ref = snapshot.artifact_ref
            self.hooks.on_artifact(snapshot.artifact_ref)
        self.hooks.on_progress(snapshot)

    async def _await_exit(self, task: TaskView, paths: TaskPaths, container: str) -> None:
        try:
            exit_code = await self.docker.wait(container)
        except DockerCommandError as error:
            if self._releasing:
                return
            await self._finish_failed(task, f"docker wait failed: {error}")
            return
        if self._releasing:
            return

        snapshot = await self._final_snapshot(paths, exit_code)
        if self._watcher is not None:
            await self._watcher.stop()
        ok, reason = evaluate_exit(exit_code, snapshot)
        if ok:
            self._state = AdapterState.COMPLETED
            await self._remove_container()
            logger.info("Sandbox for %s completed", task.short_id)
            self.hooks.on_complete()
            return
        await self._finish_failed(task, reason)

    async def _final_snapshot(self, paths: TaskPaths, exit_code: int) -> ProgressSnapshot | None:
        """Wait up to the grace period for a lagging terminal snapshot write."""

        deadline = time.monotonic() + (
            self.config.final_snapshot_grace_seconds if exit_code == 0 else 0.0
        )
        while True:
            snapshot = self._latest_snapshot(paths)
            if snapshot is not None and snapshot.is_terminal:
                return snapshot
            if time.monotonic() >= deadline:
                return snapshot
            await asyncio.sleep(self.config.poll_interval_seconds)

    def _latest_snapshot(self, paths: TaskPaths) -> ProgressSnapshot | None:
        signature = file_signature(paths.progress)
        if signature is not None and signature != self._baseline:
            snapshot = read_progress(paths.progress)
            if snapshot is not None:
                return snapshot
        return self._watcher.last_snapshot if self._watcher is not None else None

    async def _finish_failed(self, task: TaskView, reason: str) -> None:
        if self._watcher is not None:
            await self._watcher.stop()
        diagnostics = ""
        if self._container is not None:
            try:
                diagnostics = await self.docker.logs(self._container, tail=LOG_TAIL_LINES)
            except DockerCommandError as error:
                logger.warning("Could not capture logs of %s: %s", self._container, error)
            await self._remove_container()
        self._state = AdapterState.FAILED
        logger.error("Sandbox for %s failed: %s", task.short_id, reason)
        self.hooks.on_error(ExecutionError(reason, diagnostics=diagnostics))

    async def _remove_container(self) -> None:
        if self._container is None:
            return
        try:
            await self.docker.remove(self._container)
        except DockerCommandError as error:
            logger.warning("Failed to remove sandbox %s: %s", self._container, error)
