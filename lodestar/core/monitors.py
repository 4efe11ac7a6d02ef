"""Background loops tied to a workflow run.

A :class:`PeriodicTask` sleeps, checks its ``should_continue`` predicate,
then runs one tick.  A tick that raises is logged and the loop carries on;
the predicate returning False (session frozen) ends the loop for good.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Awaitable, Callable

from lodestar.core.logging import get_logger

logger = get_logger("core.monitors")


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[None]],
        should_continue: Callable[[], bool] = lambda: True,
    ) -> None:
        self.name = name
        self.interval = interval
        self._tick = tick
        self._should_continue = should_continue
        self._task: asyncio.Task | None = None
        self._stopped = False
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.debug("%s started (every %.1fs)", self.name, self.interval)

    async def _loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if self._stopped or not self._should_continue():
                break
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("%s tick failed: %s", self.name, exc, exc_info=True)
            self.ticks += 1
        logger.debug("%s finished after %d tick(s)", self.name, self.ticks)

    async def stop(self) -> None:
        """Stop the loop and wait for it to unwind.  Safe to call more than once."""
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Called from inside a tick: the loop exits once the tick returns.
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
