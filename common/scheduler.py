"""
Fixed-Cadence Loop

ScheduledLoop fires an async callback on a fixed cadence measured on the
event loop's monotonic clock, so wall-clock corrections never bunch up or
stall ticks.

Cadence rules:
- Deadlines advance by whole intervals from the first tick, not from
  when the previous callback finished
- A callback that overruns one or more deadlines causes those ticks to be
  skipped and counted, never queued
- The callback is awaited inline, so ticks of one loop never overlap

Usage:
    async def poll():
        ...

    loop = ScheduledLoop(1.0, poll, name="acquisition-device", run_immediately=True)
    await loop.start()
    ...
    loop.stop()
"""

import asyncio
from typing import Awaitable, Callable

from common.logging_setup import get_service_logger

logger = get_service_logger("scheduler")


class ScheduledLoop:
    """
    Runs `callback` every `interval_seconds` in a background task.

    Exceptions from the callback are logged and counted; the loop keeps
    going. Cancelling the loop cancels whatever the callback is awaiting.
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
        run_immediately: bool = False,
    ):
        """
        Args:
            interval_seconds: Time between ticks (sub-second allowed)
            callback: Async function awaited once per tick
            name: Used in logs and stats
            run_immediately: First tick fires at start() instead of one
                interval later
        """
        self._interval = self._check_interval(interval_seconds)
        self.callback = callback
        self.name = name
        self.run_immediately = run_immediately

        self._task: asyncio.Task | None = None
        self._deadline: float = 0.0
        self._rescheduled = asyncio.Event()

        self._ticks = 0
        self._errors = 0
        self._skipped = 0
        self._last_lateness_ms = 0.0
        self._last_duration_s = 0.0

    @staticmethod
    def _check_interval(interval_seconds: float) -> float:
        if interval_seconds <= 0:
            raise ValueError(f"interval must be positive, got {interval_seconds}")
        return float(interval_seconds)

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_count(self) -> int:
        return self._ticks

    @property
    def skipped_count(self) -> int:
        return self._skipped

    async def start(self) -> None:
        """Spawn the loop task (no-op when already running)."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=f"scheduler:{self.name}")

    def stop(self) -> None:
        """Cancel the loop task, including an in-progress callback."""
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def set_interval(self, interval_seconds: float) -> None:
        """Change the cadence; the next deadline is recomputed from now."""
        self._interval = self._check_interval(interval_seconds)
        if self.is_running:
            self._deadline = asyncio.get_running_loop().time() + self._interval
            self._rescheduled.set()
        logger.debug(f"Loop '{self.name}' interval set to {self._interval}s")

    async def _run(self) -> None:
        clock = asyncio.get_running_loop()
        self._deadline = clock.time()
        if not self.run_immediately:
            self._deadline += self._interval

        while True:
            await self._wait_for_deadline(clock)

            started = clock.time()
            self._last_lateness_ms = max(0.0, started - self._deadline) * 1000
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._errors += 1
                logger.error(f"Loop '{self.name}' callback error: {e}")
            self._ticks += 1
            self._last_duration_s = clock.time() - started

            self._advance(clock.time())

    async def _wait_for_deadline(self, clock: asyncio.AbstractEventLoop) -> None:
        # set_interval() moves the deadline while we sleep
        while True:
            delay = self._deadline - clock.time()
            if delay <= 0:
                return
            self._rescheduled.clear()
            try:
                await asyncio.wait_for(self._rescheduled.wait(), timeout=delay)
            except asyncio.TimeoutError:
                return

    def _advance(self, now: float) -> None:
        self._deadline += self._interval
        if self._deadline > now:
            return

        missed = int((now - self._deadline) // self._interval) + 1
        self._deadline += missed * self._interval
        self._skipped += missed
        logger.warning(
            f"Loop '{self.name}' skipped {missed} tick(s) "
            f"(callback took {self._last_duration_s:.3f}s)"
        )

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "interval_s": self._interval,
            "running": self.is_running,
            "tick_count": self._ticks,
            "error_count": self._errors,
            "skipped_count": self._skipped,
            "last_lateness_ms": round(self._last_lateness_ms, 1),
            "last_duration_s": round(self._last_duration_s, 3),
        }
