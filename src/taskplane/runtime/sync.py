"""File-based progress / inbox / pause-signal contract between control plane and executor.

Layout under the world root::

    tasks/<task_id>/progress.json   written by the executor, read by the control plane
    tasks/<task_id>/inbox.json      written by the control plane, drained by the executor
    tasks/<task_id>/pause.signal    written by the control plane, consumed by the supervisor

All JSON keys are camelCase so existing executors keep interoperating.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from taskplane.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)

PROGRESS_FILE = "progress.json"
INBOX_FILE = "inbox.json"
PAUSE_SIGNAL_FILE = "pause.signal"


class ProgressStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    WAITING_FOR_HUMAN = "waiting_for_human"


TERMINAL_PROGRESS = frozenset({ProgressStatus.COMPLETED, ProgressStatus.FAILED})

_KNOWN_KEYS = frozenset(
    {
        "taskId",
        "leaderId",
        "reportedAt",
        "status",
        "summary",
        "percentComplete",
        "checkpoints",
        "question",
        "artifactRef",
        "sandboxRepoUrl",
    },
)


@dataclass(frozen=True, slots=True)
class TaskPaths:
    """Per-task sync file locations."""

    world_root: Path
    task_id: str

    @property
    def task_dir(self) -> Path:
        return self.world_root / "tasks" / self.task_id

    @property
    def progress(self) -> Path:
        return self.task_dir / PROGRESS_FILE

    @property
    def inbox(self) -> Path:
        return self.task_dir / INBOX_FILE

    @property
    def pause_signal(self) -> Path:
        return self.task_dir / PAUSE_SIGNAL_FILE


@dataclass(slots=True)
class Checkpoint:
    at: str
    description: str
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"at": self.at}
        if self.session_id:
            payload["sessionId"] = self.session_id
        payload["description"] = self.description
        return payload


@dataclass(slots=True)
class ProgressSnapshot:
    """Periodically rewritten record of a task's execution state.

    The control plane is a passive observer: ``percent_complete`` is not
    checked for monotonicity and unknown keys are carried through untouched.
    """

    task_id: str
    status: ProgressStatus
    summary: str = ""
    percent_complete: int = 0
    checkpoints: list[Checkpoint] = field(default_factory=list)
    question: str | None = None
    artifact_ref: str | None = None
    leader_id: str | None = None
    reported_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PROGRESS

    @property
    def latest_session_id(self) -> str | None:
        for checkpoint in reversed(self.checkpoints):
            if checkpoint.session_id:
                return checkpoint.session_id
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload["taskId"] = self.task_id
        if self.leader_id:
            payload["leaderId"] = self.leader_id
        payload["reportedAt"] = self.reported_at or to_iso(utc_now())
        payload["status"] = self.status.value
        payload["summary"] = self.summary
        payload["percentComplete"] = self.percent_complete
        payload["checkpoints"] = [checkpoint.to_dict() for checkpoint in self.checkpoints]
        if self.question is not None and self.status is ProgressStatus.WAITING_FOR_HUMAN:
            payload["question"] = self.question
        if self.artifact_ref:
            payload["artifactRef"] = self.artifact_ref
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ProgressSnapshot:
        """Parse a snapshot; raises ``ValueError`` for structurally invalid payloads."""

        task_id = raw.get("taskId")
        if not isinstance(task_id, str) or not task_id:
            raise ValueError("progress snapshot is missing taskId")
        status = ProgressStatus(raw.get("status"))

        checkpoints: list[Checkpoint] = []
        for item in raw.get("checkpoints") or []:
            if not isinstance(item, dict):
                continue
            checkpoints.append(
                Checkpoint(
                    at=str(item.get("at", "")),
                    description=str(item.get("description", "")),
                    session_id=str(item["sessionId"]) if item.get("sessionId") else None,
                ),
            )

        percent_raw = raw.get("percentComplete", 0)
        percent = int(percent_raw) if isinstance(percent_raw, int | float) else 0
        artifact_ref = raw.get("artifactRef") or raw.get("sandboxRepoUrl")
        question = raw.get("question")
        return cls(
            task_id=task_id,
            status=status,
            summary=str(raw.get("summary") or ""),
            percent_complete=max(0, min(100, percent)),
            checkpoints=checkpoints,
            question=str(question) if question else None,
            artifact_ref=str(artifact_ref) if artifact_ref else None,
            leader_id=str(raw["leaderId"]) if raw.get("leaderId") else None,
            reported_at=str(raw["reportedAt"]) if raw.get("reportedAt") else None,
            extra={key: value for key, value in raw.items() if key not in _KNOWN_KEYS},
        )


@dataclass(slots=True)
class PauseSignal:
    requested_at: str
    message: str


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Rewrite a sync file wholesale so readers never observe a half-written document."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
    os.replace(tmp_path, path)


def write_progress(paths: TaskPaths, snapshot: ProgressSnapshot) -> None:
    write_json_atomic(paths.progress, snapshot.to_dict())


def read_progress(path: Path) -> ProgressSnapshot | None:
    """Read a progress snapshot; missing or unparseable files mean "no update yet"."""

    try:
        raw = json.loads(path.read_text("utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as error:
        logger.debug("Progress file %s not readable yet: %s", path, error)
        return None
    if not isinstance(raw, dict):
        return None
    try:
        return ProgressSnapshot.from_dict(raw)
    except (TypeError, ValueError) as error:
        logger.debug("Progress file %s has invalid content: %s", path, error)
        return None


def read_inbox(paths: TaskPaths) -> list[str]:
    try:
        raw = json.loads(paths.inbox.read_text("utf-8"))
    except FileNotFoundError:
        return []
    except (OSError, ValueError) as error:
        logger.warning("Inbox %s is unreadable, treating as empty: %s", paths.inbox, error)
        return []
    messages = raw.get("messages") if isinstance(raw, dict) else None
    if not isinstance(messages, list):
        return []
    return [str(message) for message in messages]


def write_inbox(paths: TaskPaths, messages: list[str]) -> None:
    write_json_atomic(
        paths.inbox,
        {"messages": list(messages), "updatedAt": to_iso(utc_now())},
    )


def append_inbox(paths: TaskPaths, message: str) -> list[str]:
    """Append one message by rewriting the full array; returns the queued messages."""

    messages = [*read_inbox(paths), message]
    write_inbox(paths, messages)
    return messages


def drain_inbox(paths: TaskPaths) -> list[str]:
    """Read then immediately clear the inbox (at-most-once per drain)."""

    messages = read_inbox(paths)
    if messages:
        write_inbox(paths, [])
    return messages


def write_pause_signal(paths: TaskPaths, message: str) -> PauseSignal:
    signal = PauseSignal(requested_at=to_iso(utc_now()), message=message)
    write_json_atomic(
        paths.pause_signal,
        {"requestedAt": signal.requested_at, "message": signal.message},
    )
    return signal


def read_pause_signal(paths: TaskPaths) -> PauseSignal | None:
    try:
        raw = json.loads(paths.pause_signal.read_text("utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError):
        # A present but unreadable signal still means "stop".
        return PauseSignal(requested_at="", message="")
    if not isinstance(raw, dict):
        return PauseSignal(requested_at="", message="")
    return PauseSignal(
        requested_at=str(raw.get("requestedAt", "")),
        message=str(raw.get("message", "")),
    )


def clear_pause_signal(paths: TaskPaths) -> bool:
    try:
        paths.pause_signal.unlink()
    except FileNotFoundError:
        return False
    return True
