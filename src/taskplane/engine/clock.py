"""Shift clock: a repeating work, rest and day-end cadence fed into the signal queue."""

from __future__ import annotations

import asyncio
import logging

from taskplane.tasks.signals import SignalQueue, SignalType

logger = logging.getLogger(__name__)


class ShiftClock:
    """Append ``rest_start`` after each work period and ``day_end`` after each rest period.

    The clock never touches runners directly; the scheduler tick acts on the
    signals like it does on operator commands. A zero period disables it.
    """

    def __init__(self, *, signals: SignalQueue, work_seconds: float, rest_seconds: float) -> None:
        self.signals = signals
        self.work_seconds = work_seconds
        self.rest_seconds = rest_seconds
        self.day = 0

    @property
    def enabled(self) -> bool:
        return self.work_seconds > 0 and self.rest_seconds > 0

    async def run(self, stop: asyncio.Event) -> None:
        if not self.enabled:
            logger.debug("Shift clock disabled")
            return
        while not stop.is_set():
            self.day += 1
            logger.info(
                "Shift clock: day %d started (%.0fs work, %.0fs rest)",
                self.day,
                self.work_seconds,
                self.rest_seconds,
            )
            if await _stopped_within(stop, self.work_seconds):
                return
            self.signals.append(SignalType.REST_START, {"day": self.day})
            logger.info("Shift clock: rest period started for day %d", self.day)
            if await _stopped_within(stop, self.rest_seconds):
                return
            self.signals.append(SignalType.DAY_END, {"day": self.day})
            logger.info("Shift clock: day %d ended", self.day)


async def _stopped_within(stop: asyncio.Event, seconds: float) -> bool:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except TimeoutError:
        return False
    return True
