"""
Timer-driven background work.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

logger = structlog.get_logger(__name__)


class PeriodicTask:
    """
    Runs a callback every ``interval_s`` seconds until stopped.

    A failing tick is logged and the loop continues; stopping cancels the
    timer and waits for the current tick to unwind.
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        callback: Callable[[], Union[Any, Awaitable[Any]]],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.interval_s = interval_s
        self.callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval_s)
            try:
                result = self.callback()
                if inspect.isawaitable(result):
                    await result
                self.ticks += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                logger.error(
                    "periodic_task_failed",
                    task=self.name,
                    error=str(e),
                    exc_info=True,
                )
