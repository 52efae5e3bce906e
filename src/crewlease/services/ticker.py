from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[Any]]


class Ticker:
    """Invoke an async callback on a fixed interval.

    The store has no change-notification channel, so every periodic job
    (lease sweeps, agent polling) runs as a tick. A failing tick is logged
    and the loop waits for the next one; the failed operation itself has
    already rolled back.
    """

    def __init__(self, interval: float, callback: TickCallback, name: str = "ticker"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, run_immediately: bool = False) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(run_immediately), name=self.name)
        logger.info("Ticker %s started (interval=%ss)", self.name, self.interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Ticker %s stopped", self.name)

    async def tick_once(self) -> Any:
        return await self.callback()

    async def _loop(self, run_immediately: bool) -> None:
        if not run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            try:
                await self.callback()
            except Exception:
                logger.exception("Tick %s failed; retrying next tick", self.name)
            await asyncio.sleep(self.interval)
