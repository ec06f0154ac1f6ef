"""
Concurrency primitives for provider syncs.

- RateLimiter: token bucket per provider API.
- ConcurrencyLimiter: global bound on in-flight syncs, acquired with ``async with``.
- SingleFlight: at most one in-flight coroutine per key; later callers share its result.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Hashable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class RateLimiter:
    """
    Token bucket rate limiter for provider API calls.

    Ensures we don't exceed provider request limits across all accounts.
    """

    def __init__(self, rate_per_second: float):
        self.rate = rate_per_second
        self.tokens = rate_per_second
        self.last_update: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a token is available."""
        async with self._lock:
            now = asyncio.get_running_loop().time()
            if self.last_update is None:
                self.last_update = now
            elapsed = now - self.last_update

            # Refill tokens based on elapsed time
            self.tokens = min(self.rate, self.tokens + elapsed * self.rate)
            self.last_update = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.rate
                logger.debug("rate_limit_waiting", wait_seconds=round(wait_time, 3))
                await asyncio.sleep(wait_time)
                self.last_update = asyncio.get_running_loop().time()
                self.tokens = 0
            else:
                self.tokens -= 1


class ConcurrencyLimiter:
    """Bounded pool of sync slots. The slot is released on every exit path, including cancellation."""

    def __init__(self, limit: int):
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    @asynccontextmanager
    async def slot(self):
        async with self._semaphore:
            self._active += 1
            try:
                yield
            finally:
                self._active -= 1


class SingleFlight:
    """
    De-duplicates concurrent work per key.

    A second caller for a key that is already running awaits the same task
    instead of starting a duplicate.
    """

    def __init__(self):
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    def is_running(self, key: Hashable) -> bool:
        return key in self._inflight

    async def run(self, key: Hashable, func: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(func())
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        else:
            logger.info("single_flight_joined", key=str(key))
        # Shield so one caller's cancellation does not cancel the shared work.
        return await asyncio.shield(task)

