"""In-process periodic task runner used by the application lifespan."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Call an async function every ``interval`` seconds.

    The next tick starts only after the previous one finished, so ticks never
    overlap. Errors are logged and the loop keeps going.
    """

    def __init__(self, name: str, func: Callable[[], Awaitable[Any]], interval: float):
        self.name = name
        self.func = func
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(
            "Started periodic task", extra={"task": self.name, "interval_seconds": self.interval}
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped periodic task", extra={"task": self.name})

    async def _run(self) -> None:
        while True:
            try:
                await self.func()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic task failed", extra={"task": self.name})
            await asyncio.sleep(self.interval)
