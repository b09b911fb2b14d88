"""
Tick Scheduler — periodic driver for every live task.

Each cycle calls Controller.tick(), which ticks every task (and through it
every active conversation), prunes finished tasks and fires `tick`. A
failing cycle is logged; the loop keeps going.
"""
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

import structlog

if TYPE_CHECKING:
    from core.controller import Controller

logger = structlog.get_logger()


class TickScheduler:
    """
    Runs the tick loop as a background task.

    Configure the interval in settings:
        tick:
          tick_delay_ms: 1500
    """

    def __init__(self, controller: Controller, interval_ms: int = 1500):
        self.controller = controller
        self.interval_ms = interval_ms
        self.cycles = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._tick_loop(), name="tick_scheduler")
        logger.info("tick_scheduler_started", interval_ms=self.interval_ms)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("tick_scheduler_stopped", cycles=self.cycles)

    async def run_once(self) -> None:
        self.cycles += 1
        await self.controller.tick()

    async def _tick_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("tick_cycle_error", error=str(e))

            await asyncio.sleep(self.interval_ms / 1000)
