"""
Polling Loop — runs one dispatcher cycle on a fixed interval.

Runs as a background task inside the FastAPI lifespan. One loop per
dispatcher; each loop is strictly sequential, so a cycle finishes
(including every handler it invokes) before the next sleep begins.

Usage:
    loop = PollingLoop("events", event_dispatcher.dispatch_batch, interval_s=10)
    await loop.start()
    ...
    await loop.stop()
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()


class PollingLoop:
    """Calls `cycle` every `interval_s` seconds until stopped. A failing cycle never ends the loop."""

    def __init__(
        self,
        name: str,
        cycle: Callable[[], Awaitable[Any]],
        interval_s: float,
    ):
        self.name = name
        self._cycle = cycle
        self.interval_s = interval_s
        self.cycles = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        if self.running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name=f"{self.name}_poller")
        logger.info("poller_started", poller=self.name, interval_s=self.interval_s)

    async def stop(self) -> None:
        """Gracefully stop the poller."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("poller_stopped", poller=self.name, cycles=self.cycles)

    async def run_once(self) -> Any:
        self.cycles += 1
        return await self._cycle()

    async def _poll_loop(self) -> None:
        """Main polling loop — runs until stopped."""
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("poll_cycle_error", poller=self.name, error=str(e), exc_info=True)

            await asyncio.sleep(self.interval_s)
