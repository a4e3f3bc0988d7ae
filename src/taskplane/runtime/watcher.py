"""Polling watcher that delivers progress snapshots in file-write order."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from pathlib import Path

from taskplane.runtime.sync import ProgressSnapshot, read_progress

logger = logging.getLogger(__name__)

FileSignature = tuple[int, int]


def file_signature(path: Path) -> FileSignature | None:
    """(mtime_ns, size) of a file, or ``None`` when it does not exist."""

    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    return stat.st_mtime_ns, stat.st_size


class ProgressWatcher:
    """Watches one progress file and forwards every settled write.

    A write is delivered once the file has been quiet for
    ``stability_seconds``; unparseable content is treated as "no update yet".
    """

    def __init__(
        self,
        path: Path,
        callback: Callable[[ProgressSnapshot], None],
        *,
        poll_interval_seconds: float = 0.2,
        stability_seconds: float = 0.2,
        ignore_initial: bool = True,
    ) -> None:
        self.path = path
        self.callback = callback
        self.poll_interval_seconds = poll_interval_seconds
        self.stability_seconds = stability_seconds
        self._delivered: FileSignature | None = file_signature(path) if ignore_initial else None
        self._pending: FileSignature | None = None
        self._pending_since = 0.0
        self._task: asyncio.Task[None] | None = None
        self.last_snapshot: ProgressSnapshot | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(),
            name=f"progress-watch:{self.path.parent.name}",
        )

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def poll(self) -> ProgressSnapshot | None:
        """One watch step; returns the snapshot delivered by this step, if any."""

        signature = file_signature(self.path)
        if signature is None or signature == self._delivered:
            self._pending = None
            return None

        now = time.monotonic()
        if signature != self._pending:
            self._pending = signature
            self._pending_since = now
            if self.stability_seconds > 0:
                return None
        elif now - self._pending_since < self.stability_seconds:
            return None

        self._delivered = signature
        self._pending = None
        snapshot = read_progress(self.path)
        if snapshot is None:
            return None
        self.last_snapshot = snapshot
        try:
            self.callback(snapshot)
        except Exception:
            logger.exception("Progress callback failed for %s", self.path)
        return snapshot

    async def _run(self) -> None:
        while True:
            self.poll()
            await asyncio.sleep(self.poll_interval_seconds)
