import asyncio
import time

import pytest

from services.shared.concurrency import CancellationToken, KeyedLock, TokenBucket
from services.shared.errors import IngestionCancelled


class TestCancellationToken:
    """Test suite for cooperative cancellation."""

    async def test_cancel_is_idempotent(self):
        token = CancellationToken()
        assert not token.cancelled
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    async def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(IngestionCancelled):
            token.raise_if_cancelled()

    async def test_sleep_wakes_on_cancel(self):
        """Test that a long sleep returns as soon as the token fires."""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        started = time.monotonic()
        assert await token.sleep(10) is True
        assert time.monotonic() - started < 1

    async def test_sleep_times_out(self):
        token = CancellationToken()
        assert await token.sleep(0.01) is False
        assert await token.sleep(0) is False


class TestTokenBucket:
    """Test suite for the token bucket limiter."""

    def test_invalid_rate(self):
        with pytest.raises(ValueError):
            TokenBucket(0)

    async def test_burst_then_throttle(self):
        """Test that capacity tokens are immediate and the next one waits."""
        bucket = TokenBucket(rate=20, capacity=2)
        started = time.monotonic()
        await bucket.acquire()
        await bucket.acquire()
        assert time.monotonic() - started < 0.04
        await bucket.acquire()
        assert time.monotonic() - started >= 0.04

    async def test_cancelled_acquire(self):
        bucket = TokenBucket(rate=0.1, capacity=1)
        await bucket.acquire()
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(IngestionCancelled):
            await asyncio.wait_for(bucket.acquire(token), timeout=2)


class TestKeyedLock:
    """Test suite for per-key locking."""

    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        active = []
        overlap = []

        async def worker(key):
            async with locks.acquire(key):
                active.append(key)
                overlap.append(active.count(key))
                await asyncio.sleep(0.005)
                active.remove(key)

        await asyncio.gather(*(worker("https://a.com/") for _ in range(4)))
        assert max(overlap) == 1

    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async def holder():
            async with locks.acquire("a"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def other():
            async with locks.acquire("b"):
                inside.set()

        await asyncio.gather(holder(), other())

    async def test_locks_are_released(self):
        locks = KeyedLock()
        async with locks.acquire("a"):
            assert len(locks) == 1
        assert len(locks) == 0
