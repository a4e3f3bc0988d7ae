"""Durable task id -> resumable execution-session handle mapping."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from taskplane.runtime.sync import write_json_atomic

logger = logging.getLogger(__name__)


class SessionStore:
    """One ``{"sessionId": ...}`` file per task under ``<root>/tasks``.

    Files are never deleted automatically so a finished task can still be
    resumed post-mortem.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, task_id: str) -> Path:
        return self.root / "tasks" / f"{task_id}.json"

    def read(self, task_id: str) -> str | None:
        path = self.path_for(task_id)
        try:
            raw = json.loads(path.read_text("utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as error:
            logger.warning("Session file %s is unreadable: %s", path, error)
            return None
        session_id = raw.get("sessionId") if isinstance(raw, dict) else None
        return str(session_id) if session_id else None

    def write(self, task_id: str, session_id: str) -> None:
        if self.read(task_id) == session_id:
            return
        write_json_atomic(self.path_for(task_id), {"sessionId": session_id})
        logger.debug("Session persisted for %s: %s", task_id[:8], session_id)

    def exists(self, task_id: str) -> bool:
        return self.read(task_id) is not None
