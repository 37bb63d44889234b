"""Periodic trigger with cooperative cancellation."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, Set

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[object]]


class Scheduler(Protocol):
    """Fires a callback at a fixed interval until cancelled."""

    def start(self, callback: Callback) -> None: ...

    def cancel(self) -> None: ...

    async def wait_closed(self) -> None: ...

    @property
    def running(self) -> bool: ...


class PeriodicScheduler:
    """asyncio implementation of :class:`Scheduler`.

    The first tick fires one full interval after :meth:`start`.  Each tick
    spawns the callback as its own task, like a wall-clock timer, so a
    slow callback does not shift the schedule; overlap is the callback's
    concern (the monitor drops it with its debounce guard).
    """

    def __init__(self, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, callback: Callback) -> None:
        if self.running:
            raise RuntimeError("Scheduler already running")
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(callback))
        logger.info("Starting periodic monitoring with %.0fs interval", self.interval_seconds)

    async def _loop(self, callback: Callback) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                break  # Stop event set during sleep
            except asyncio.TimeoutError:
                pass  # Interval elapsed

            self.ticks += 1
            task = asyncio.create_task(callback())
            self._pending.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Scheduled callback failed: %s", error, exc_info=error)

    def cancel(self) -> None:
        """Stop producing ticks; callbacks already running are left alone."""
        self._stop_event.set()

    async def wait_closed(self) -> None:
        """Wait for the tick loop and any callbacks it spawned to finish."""
        if self._task is not None:
            await self._task
            self._task = None
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
