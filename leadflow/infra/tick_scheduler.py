# leadflow/infra/tick_scheduler.py
"""
Periodic tick delivery (reminder sweep, scheduled-lead promotion).

One asyncio task per tick, each sleeping its own interval. Enable it on
a single instance only (``TICK_SCHEDULER_ENABLED``); deployments that
use an external cron call ``POST /triggers/ticks/{name}`` instead.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from leadflow.infra.logging_config import get_logger
from leadflow.infra.metrics import inc_counter

logger = get_logger(__name__)

TickRunner = Callable[[str], Awaitable[Any]]


class TickScheduler:
    def __init__(self, runner: TickRunner, intervals: dict[str, float]):
        self._runner = runner
        self._intervals = dict(intervals)
        self._tasks: list[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        self._running = True
        for name, interval in self._intervals.items():
            task = asyncio.create_task(self._loop(name, interval), name=f"tick:{name}")
            self._tasks.append(task)
        logger.info(f"Tick scheduler started: {self._intervals}")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Tick scheduler stopped")

    async def fire(self, name: str) -> None:
        """Run one tick now; errors are logged, never raised."""
        try:
            await self._runner(name)
            inc_counter("ticks_total", tick=name, status="ok")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            inc_counter("ticks_total", tick=name, status="error")
            logger.error(f"Tick {name} failed: {exc}", exc_info=True)

    async def _loop(self, name: str, interval: float) -> None:
        while self._running:
            await asyncio.sleep(interval)
            await self.fire(name)
