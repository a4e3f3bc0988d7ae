"""Notification sink: human-readable event strings tagged with a task id or ``global``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"


class Notifier(Protocol):
    def notify(self, scope: str, text: str) -> None: ...


def format_event(scope: str, text: str) -> str:
    tag = GLOBAL_SCOPE if scope == GLOBAL_SCOPE else scope[:8]
    return f"[{tag}] {text}"


class LoggingNotifier:
    """Default sink: every event becomes one INFO log line."""

    def notify(self, scope: str, text: str) -> None:
        logger.info("%s", format_event(scope, text))


@dataclass(slots=True)
class RecordingNotifier:
    """Keeps events in memory, in emission order."""

    events: list[tuple[str, str]] = field(default_factory=list)

    def notify(self, scope: str, text: str) -> None:
        self.events.append((scope, text))

    def for_scope(self, scope: str) -> list[str]:
        return [text for event_scope, text in self.events if event_scope == scope]

    def lines(self) -> list[str]:
        return [format_event(scope, text) for scope, text in self.events]
