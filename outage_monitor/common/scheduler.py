"""
Interval Scheduler for the Monitor Loops

Provides ScheduledLoop class that fires callbacks at exact intervals,
accounting for callback execution time to prevent drift.

Unlike asyncio.sleep()-based loops, this scheduler:
- Fires at exact wall-clock boundaries
- Skips missed intervals to catch up
- Isolates callback failures to the tick that raised them
- Stops on a shared stop event, never in the middle of a callback

Usage:
    async def my_callback():
        # Do work...
        pass

    stop_event = asyncio.Event()
    scheduler = ScheduledLoop(60.0, my_callback, "sync", stop_event)
    await scheduler.start()

    # Later:
    stop_event.set()
    await scheduler.wait()
"""

import asyncio
import time
from typing import Awaitable, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")


class ScheduledLoop:
    """
    Precise interval scheduler that accounts for execution time.

    If callback execution takes time, the next iteration is scheduled
    relative to the original schedule, not relative to when the callback
    finished. Exceptions raised by the callback are logged and the loop
    carries on with the next interval.

    Attributes:
        interval: The interval in seconds between executions
        callback: Async function to call each interval
        stop_event: Cancellation signal, checked between ticks
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
        stop_event: asyncio.Event | None = None,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval must be positive, got {interval_seconds}")

        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.stop_event = stop_event or asyncio.Event()

        self._next_run: float = 0
        self._task: asyncio.Task | None = None

        # Observability metrics
        self._skipped_count: int = 0
        self._execution_count: int = 0
        self._error_count: int = 0
        self._last_execution_time: float = 0
        self._last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the scheduled loop in a background task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"loop-{self.name}")

    def stop(self) -> None:
        """Ask the loop to exit at its next tick boundary."""
        self.stop_event.set()

    async def wait(self) -> None:
        """Wait for the loop to exit."""
        if self._task is not None:
            await self._task

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True when the stop event fired."""
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run(self) -> None:
        """Main loop that fires callback at exact intervals."""
        now = time.time()
        self._next_run = ((now // self.interval) + 1) * self.interval
        logger.info(f"Loop '{self.name}' started (interval: {self.interval}s)")

        while not self.stop_event.is_set():
            sleep_duration = self._next_run - time.time()
            if sleep_duration > 0 and await self._sleep(sleep_duration):
                break

            if self.stop_event.is_set():
                break

            drift = time.time() - self._next_run
            if drift > 30:
                # Clock jump (NTP sync after boot, suspend/resume)
                logger.info(
                    f"Loop '{self.name}' clock jump detected ({drift:.0f}s), realigning"
                )
                self._next_run = time.time()

            try:
                start = time.time()
                await self.callback()
                self._last_execution_time = time.time() - start
                self._execution_count += 1
            except Exception as e:
                self._error_count += 1
                self._last_error = str(e)
                logger.exception(f"Loop '{self.name}' tick failed: {e}")

            # Skip missed intervals to catch up (don't queue up missed executions)
            now = time.time()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1

            if skipped > 1:
                self._skipped_count += skipped - 1
                logger.warning(
                    f"Loop '{self.name}' skipped {skipped - 1} intervals "
                    f"(execution took {self._last_execution_time:.3f}s)"
                )

        logger.info(f"Loop '{self.name}' stopped")

    @property
    def execution_count(self) -> int:
        """Total number of successful executions."""
        return self._execution_count

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def skipped_count(self) -> int:
        return self._skipped_count

    def get_stats(self) -> dict:
        """Get scheduler statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "running": self.running,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "last_error": self._last_error,
            "skipped_count": self._skipped_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }


class SchedulerGroup:
    """
    Manage multiple scheduled loops that share one stop event.

    Setting the stop event (or calling stop_all) ends every loop at its
    next tick boundary.
    """

    def __init__(self, stop_event: asyncio.Event | None = None):
        self.stop_event = stop_event or asyncio.Event()
        self._schedulers: dict[str, ScheduledLoop] = {}

    def add(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
    ) -> ScheduledLoop:
        """Add a scheduler to the group."""
        scheduler = ScheduledLoop(interval_seconds, callback, name, self.stop_event)
        self._schedulers[name] = scheduler
        return scheduler

    async def start_all(self) -> None:
        for scheduler in self._schedulers.values():
            await scheduler.start()

    def stop_all(self) -> None:
        self.stop_event.set()

    async def wait_all(self) -> None:
        """Wait for every loop to finish its in-flight tick and exit."""
        await asyncio.gather(*(s.wait() for s in self._schedulers.values()))

    def get_stats(self) -> dict:
        return {
            name: scheduler.get_stats()
            for name, scheduler in self._schedulers.items()
        }

    def get(self, name: str) -> ScheduledLoop | None:
        return self._schedulers.get(name)
