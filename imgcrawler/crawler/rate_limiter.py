"""
Global request rate limiter shared by every fetch in a crawl session.
"""

import asyncio
import logging
import time
from typing import Optional


class RateLimiter:
    """
    Caps the request start rate and the number of in-flight requests.

    A single instance is shared by all workers, so the total request rate
    of a crawl stays bounded regardless of the worker pool size.

    Usage:
        async with limiter:
            await session.get(url)
    """

    def __init__(self, min_interval: float = 0.2, max_concurrent: int = 5):
        if min_interval < 0:
            raise ValueError("min_interval must be non-negative")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.min_interval = min_interval
        self.max_concurrent = max_concurrent
        self.logger = logging.getLogger(__name__)

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._start_lock = asyncio.Lock()
        self._last_start: Optional[float] = None
        self._in_flight = 0

        self.stats = {
            'total_acquired': 0,
            'total_wait_time': 0.0,
            'max_in_flight': 0
        }

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def acquire(self):
        """Wait for a free slot and for the minimum spacing since the previous start."""
        wait_start = time.monotonic()
        await self._semaphore.acquire()
        try:
            async with self._start_lock:
                if self._last_start is not None:
                    delay = self._last_start + self.min_interval - time.monotonic()
                    if delay > 0:
                        await asyncio.sleep(delay)
                self._last_start = time.monotonic()
        except BaseException:
            self._semaphore.release()
            raise

        self._in_flight += 1
        self.stats['total_acquired'] += 1
        self.stats['total_wait_time'] += time.monotonic() - wait_start
        self.stats['max_in_flight'] = max(self.stats['max_in_flight'], self._in_flight)

    def release(self):
        self._in_flight -= 1
        self._semaphore.release()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.release()

    async def schedule(self, coro_factory):
        """Run ``coro_factory()`` under the limiter and return its result."""
        async with self:
            return await coro_factory()
