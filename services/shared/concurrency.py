"""Asyncio primitives shared by the ingestion pipeline.

Provides a cancellation token threaded through every ingestion stage,
a token-bucket rate limiter for rate-limited externalities, and a keyed
lock used to serialize writes per URL.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional, AsyncIterator

from .errors import IngestionCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag for long-running ingestion runs."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled"):
        """Fire the token. Idempotent; the first reason is kept."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info(f"Cancellation requested: {reason}")

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise IngestionCancelled(self.reason or "cancelled")

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds or until cancelled.

        Returns True when the token fired during the wait.
        """
        if delay <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False


class TokenBucket:
    """Async token bucket.

    Tokens refill continuously at ``rate`` per second up to ``capacity``.
    The internal lock is never held while sleeping.
    """

    def __init__(self, rate: float, capacity: Optional[int] = None):
        if rate <= 0:
            raise ValueError("Rate must be positive")
        self.rate = rate
        self.capacity = capacity if capacity is not None else max(1, int(rate))
        if self.capacity < 1:
            raise ValueError("Capacity must be at least 1")
        self._tokens = float(self.capacity)
        self._updated_at = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._updated_at
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated_at = now

    async def acquire(self, cancel_token: Optional[CancellationToken] = None):
        """Take one token, waiting for a refill when the bucket is empty."""
        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            async with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) / self.rate
            logger.debug(f"Rate limit reached, waiting {wait:.3f}s")
            if cancel_token is not None:
                await cancel_token.sleep(wait)
            else:
                await asyncio.sleep(wait)


class KeyedLock:
    """One asyncio.Lock per key, dropped once no task holds or awaits it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]
