"""
Periodic Task
=============
An asyncio loop that runs a coroutine every `interval` seconds until its
stop event is set. A failing cycle is logged and the loop carries on.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger


class PeriodicTask:

    def __init__(self, name: str, interval: float, cycle: Callable[[], Awaitable[object]],
                 run_immediately: bool = True):
        self.name = name
        self.interval = interval
        self.cycle = cycle
        self.run_immediately = run_immediately
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.warning(f"{self.name} already running")
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"{self.name} started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Stop scheduling cycles and wait for the one in flight, if any."""
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info(f"{self.name} stopped")

    async def _run(self) -> None:
        if not self.run_immediately and await self._wait():
            return

        while not self._stop.is_set():
            try:
                await self.cycle()
            except Exception:
                logger.exception(f"{self.name} cycle failed, retrying next tick")

            if await self._wait():
                return

    async def _wait(self) -> bool:
        """Sleep one interval; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return False
        return True
