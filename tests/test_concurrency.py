"""
Tests for sync concurrency primitives.
"""

import asyncio

import pytest

from costsentry.core.concurrency import ConcurrencyLimiter, RateLimiter, SingleFlight


class TestSingleFlight:

    async def test_concurrent_callers_share_one_run(self):
        flight = SingleFlight()
        calls = 0
        gate = asyncio.Event()

        async def work():
            nonlocal calls
            calls += 1
            await gate.wait()
            return "done"

        first = asyncio.create_task(flight.run("acc-1", work))
        second = asyncio.create_task(flight.run("acc-1", work))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert flight.is_running("acc-1")
        gate.set()

        assert await asyncio.gather(first, second) == ["done", "done"]
        assert calls == 1
        assert not flight.is_running("acc-1")

    async def test_different_keys_run_independently(self):
        flight = SingleFlight()

        async def work(value):
            await asyncio.sleep(0)
            return value

        results = await asyncio.gather(flight.run("a", lambda: work(1)), flight.run("b", lambda: work(2)))
        assert results == [1, 2]

    async def test_errors_propagate_and_clear_key(self):
        flight = SingleFlight()

        async def boom():
            raise ValueError("broken")

        with pytest.raises(ValueError):
            await flight.run("acc-1", boom)
        await asyncio.sleep(0)
        assert not flight.is_running("acc-1")


class TestConcurrencyLimiter:

    async def test_bounds_parallelism(self):
        limiter = ConcurrencyLimiter(2)
        peak = 0

        async def job():
            nonlocal peak
            async with limiter.slot():
                peak = max(peak, limiter.active)
                await asyncio.sleep(0.01)

        await asyncio.gather(*(job() for _ in range(6)))
        assert peak == 2
        assert limiter.active == 0

    async def test_slot_released_on_error(self):
        limiter = ConcurrencyLimiter(1)
        with pytest.raises(RuntimeError):
            async with limiter.slot():
                raise RuntimeError("fail")
        assert limiter.active == 0
        async with limiter.slot():
            assert limiter.active == 1


class TestRateLimiter:

    async def test_burst_within_rate(self):
        limiter = RateLimiter(rate_per_second=100.0)
        loop = asyncio.get_running_loop()
        start = loop.time()
        for _ in range(5):
            await limiter.acquire()
        assert loop.time() - start < 0.5

    async def test_waits_when_empty(self):
        limiter = RateLimiter(rate_per_second=10.0)
        limiter.tokens = 0
        limiter.last_update = asyncio.get_running_loop().time()
        loop = asyncio.get_running_loop()
        start = loop.time()
        await limiter.acquire()
        assert loop.time() - start >= 0.05
