"""Periodic task runner for the reconciliation loops."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicLoop:
    """
    Runs an async tick function repeatedly.

    Each tick is awaited to completion before the loop sleeps for `interval`
    seconds, so ticks never overlap. A slow tick delays the next one.
    Exceptions escaping a tick are logged and the loop keeps running.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[None]],
        interval: float,
    ):
        """
        Initialize periodic loop.

        Args:
            name: Loop name used in logs
            tick: Coroutine function run once per tick
            interval: Seconds to sleep between ticks
        """
        self.name = name
        self.tick = tick
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> None:
        """Run a single tick, logging any failure."""
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in {self.name} loop tick: {e}", exc_info=True)
        finally:
            self.ticks += 1

    async def _run(self) -> None:
        logger.info(f"Starting {self.name} loop (interval: {self.interval}s)")
        try:
            while self._running:
                await self.run_once()
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.info(f"{self.name} loop cancelled")

    def start(self) -> None:
        """Start the loop in a background task."""
        if self._running:
            logger.warning(f"{self.name} loop already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop and wait for the current tick to be cancelled."""
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
