"""Runtime configuration for the control plane."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

RUNTIME_MODES = ("local", "docker")

DEFAULT_AGENT_COMMAND = (
    "claude -p --output-format stream-json --verbose "
    "--permission-mode acceptEdits {resume_args} -- {prompt}"
)


@dataclass(slots=True)
class RuntimeSettings:
    """Execution-environment settings shared by both adapters."""

    mode: str = "local"
    world_root: Path = Path(".taskplane/world")
    sessions_root: Path = Path(".taskplane/sessions")
    workspace_root: Path = Path(".")
    agent_command: str = DEFAULT_AGENT_COMMAND
    executors: tuple[str, ...] = ("aria", "bram", "cleo")
    watch_poll_interval_seconds: float = 0.2
    watch_stability_seconds: float = 0.2
    max_child_contexts: int = 4


@dataclass(slots=True)
class SandboxSettings:
    """Containerized sandbox settings."""

    image: str = "taskplane-sandbox:latest"
    docker_binary: str = "docker"
    agent_command: str = DEFAULT_AGENT_COMMAND
    tools_enabled: bool = True
    final_snapshot_grace_seconds: float = 10.0
    stop_timeout_seconds: int = 10
    api_key: str | None = None
    base_url: str | None = None
    model: str | None = None


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduler loop timing and assignment retry policy."""

    tick_seconds: float = 5.0
    assignment_timeout_seconds: float = 120.0
    assignment_max_attempts: int = 3
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 30.0
    shift_work_seconds: float = 0.0
    shift_rest_seconds: float = 0.0


@dataclass(slots=True)
class CronSettings:
    """Cron scheduler settings."""

    jobs_root: Path = Path(".taskplane/cron")
    poll_seconds: float = 5.0
    reload_seconds: float = 60.0
    inline_timeout_seconds: float = 30.0


@dataclass(slots=True)
class ArtifactSettings:
    """Best-effort per-task artifact repository provisioning."""

    github_token: str | None = None
    github_org: str | None = None
    api_base_url: str = "https://api.github.com"
    repo_prefix: str = "task-"
    request_timeout_seconds: float = 15.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskplane.db")
    sqlite_busy_timeout_ms: int = 5_000
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    cron: CronSettings = field(default_factory=CronSettings)
    artifacts: ArtifactSettings = field(default_factory=ArtifactSettings)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        world_root: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        home = Path(os.getenv("TASKPLANE_HOME", ".taskplane"))
        agent_command = os.getenv("TASKPLANE_AGENT_COMMAND", DEFAULT_AGENT_COMMAND)
        return cls(
            db_path=db_path or Path(os.getenv("TASKPLANE_DB_PATH", ".taskplane.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASKPLANE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            runtime=RuntimeSettings(
                mode=os.getenv("TASKPLANE_RUNTIME_MODE", "local").strip().lower(),
                world_root=world_root
                or Path(os.getenv("TASKPLANE_WORLD_ROOT", str(home / "world"))),
                sessions_root=Path(
                    os.getenv("TASKPLANE_SESSIONS_ROOT", str(home / "sessions")),
                ),
                workspace_root=Path(os.getenv("TASKPLANE_WORKSPACE_ROOT", ".")),
                agent_command=agent_command,
                executors=_env_csv("TASKPLANE_EXECUTORS", default=("aria", "bram", "cleo")),
                watch_poll_interval_seconds=float(
                    os.getenv("TASKPLANE_WATCH_POLL_INTERVAL_SECONDS", "0.2"),
                ),
                watch_stability_seconds=float(
                    os.getenv("TASKPLANE_WATCH_STABILITY_SECONDS", "0.2"),
                ),
                max_child_contexts=int(os.getenv("TASKPLANE_MAX_CHILD_CONTEXTS", "4")),
            ),
            sandbox=SandboxSettings(
                image=os.getenv("TASKPLANE_SANDBOX_IMAGE", "taskplane-sandbox:latest"),
                docker_binary=os.getenv("TASKPLANE_DOCKER_BINARY", "docker"),
                agent_command=os.getenv("TASKPLANE_SANDBOX_AGENT_COMMAND", agent_command),
                tools_enabled=_env_bool("TASKPLANE_SANDBOX_TOOLS_ENABLED", default=True),
                final_snapshot_grace_seconds=float(
                    os.getenv("TASKPLANE_SANDBOX_FINAL_SNAPSHOT_GRACE_SECONDS", "10"),
                ),
                stop_timeout_seconds=int(
                    os.getenv("TASKPLANE_SANDBOX_STOP_TIMEOUT_SECONDS", "10"),
                ),
                api_key=os.getenv("TASKPLANE_AGENT_API_KEY") or None,
                base_url=os.getenv("TASKPLANE_AGENT_BASE_URL") or None,
                model=os.getenv("TASKPLANE_AGENT_MODEL") or None,
            ),
            scheduler=SchedulerSettings(
                tick_seconds=float(os.getenv("TASKPLANE_TICK_SECONDS", "5")),
                assignment_timeout_seconds=float(
                    os.getenv("TASKPLANE_ASSIGNMENT_TIMEOUT_SECONDS", "120"),
                ),
                assignment_max_attempts=int(os.getenv("TASKPLANE_ASSIGNMENT_MAX_ATTEMPTS", "3")),
                retry_base_seconds=float(os.getenv("TASKPLANE_RETRY_BASE_SECONDS", "2")),
                retry_max_seconds=float(os.getenv("TASKPLANE_RETRY_MAX_SECONDS", "30")),
                shift_work_seconds=float(os.getenv("TASKPLANE_SHIFT_WORK_SECONDS", "0")),
                shift_rest_seconds=float(os.getenv("TASKPLANE_SHIFT_REST_SECONDS", "0")),
            ),
            cron=CronSettings(
                jobs_root=Path(os.getenv("TASKPLANE_CRON_ROOT", str(home / "cron"))),
                poll_seconds=float(os.getenv("TASKPLANE_CRON_POLL_SECONDS", "5")),
                reload_seconds=float(os.getenv("TASKPLANE_CRON_RELOAD_SECONDS", "60")),
                inline_timeout_seconds=float(
                    os.getenv("TASKPLANE_CRON_INLINE_TIMEOUT_SECONDS", "30"),
                ),
            ),
            artifacts=ArtifactSettings(
                github_token=os.getenv("TASKPLANE_GITHUB_TOKEN") or None,
                github_org=os.getenv("TASKPLANE_GITHUB_ORG") or None,
                api_base_url=os.getenv("TASKPLANE_GITHUB_API_URL", "https://api.github.com"),
                repo_prefix=os.getenv("TASKPLANE_GITHUB_REPO_PREFIX", "task-"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the control plane cannot run with."""

        if self.runtime.mode not in RUNTIME_MODES:
            raise ValueError(
                f"TASKPLANE_RUNTIME_MODE must be one of {', '.join(RUNTIME_MODES)}, "
                f"got {self.runtime.mode!r}.",
            )
        if self.runtime.mode == "docker" and not self.sandbox.image.strip():
            raise ValueError("TASKPLANE_SANDBOX_IMAGE is required in docker runtime mode.")
        if not self.runtime.executors:
            raise ValueError("TASKPLANE_EXECUTORS must name at least one executor.")
        if "{prompt}" not in self.runtime.agent_command:
            raise ValueError("TASKPLANE_AGENT_COMMAND must include {prompt}.")
        positive = {
            "TASKPLANE_TICK_SECONDS": self.scheduler.tick_seconds,
            "TASKPLANE_ASSIGNMENT_TIMEOUT_SECONDS": self.scheduler.assignment_timeout_seconds,
            "TASKPLANE_ASSIGNMENT_MAX_ATTEMPTS": self.scheduler.assignment_max_attempts,
            "TASKPLANE_CRON_POLL_SECONDS": self.cron.poll_seconds,
            "TASKPLANE_CRON_RELOAD_SECONDS": self.cron.reload_seconds,
            "TASKPLANE_CRON_INLINE_TIMEOUT_SECONDS": self.cron.inline_timeout_seconds,
            "TASKPLANE_WATCH_POLL_INTERVAL_SECONDS": self.runtime.watch_poll_interval_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.sandbox.final_snapshot_grace_seconds < 0:
            raise ValueError("TASKPLANE_SANDBOX_FINAL_SNAPSHOT_GRACE_SECONDS must be >= 0.")
        shift = (self.scheduler.shift_work_seconds, self.scheduler.shift_rest_seconds)
        if min(shift) < 0:
            raise ValueError("TASKPLANE_SHIFT_WORK_SECONDS and _REST_SECONDS must be >= 0.")
        if (shift[0] > 0) != (shift[1] > 0):
            raise ValueError(
                "TASKPLANE_SHIFT_WORK_SECONDS and TASKPLANE_SHIFT_REST_SECONDS "
                "must be set together.",
            )


def _env_csv(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean value, got {raw!r}.")
