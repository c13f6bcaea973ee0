"""
Request rate limiting and retry backoff.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


def backoff_delay(base_delay_ms: float, attempt: int, cap_s: float = 30.0) -> float:
    """
    Exponential backoff in seconds: ``base * 2^(attempt-1)`` capped at ``cap_s``.

    Args:
        base_delay_ms: Base delay in milliseconds
        attempt: 1-based attempt number
        cap_s: Upper bound in seconds
    """
    attempt = max(attempt, 1)
    delay_ms = base_delay_ms * (2 ** (attempt - 1))
    return min(delay_ms / 1000.0, cap_s)


class RateLimiter:
    """
    Releases queued requests one at a time, every ``window / max_requests``.

    Callers await acquire(); a single drain task hands out slots in FIFO
    order. Once released a request runs concurrently with the others.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.interval_s = window_ms / max_requests / 1000.0
        self._sleep = sleep
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self.released = 0

        logger.info(
            "rate_limiter_initialized",
            max_requests=max_requests,
            window_ms=window_ms,
        )

    @property
    def queued(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def _ensure_running(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self._drain(), name="rate-limiter"
            )
        return self._queue

    async def acquire(self) -> None:
        """Wait for the next request slot."""
        queue = self._ensure_running()
        slot = asyncio.get_running_loop().create_future()
        queue.put_nowait(slot)
        await slot

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            slot = await self._queue.get()
            try:
                if slot.done():
                    # Caller gave up while queued
                    continue
                slot.set_result(None)
                self.released += 1
                await self._sleep(self.interval_s)
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """Release everything still queued, then stop the drain task."""
        if self._queue is not None and self._task is not None and not self._task.done():
            await self._queue.join()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
