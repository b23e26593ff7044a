"""
pacing.py
---------
Rate limiters for outbound file chunks.

The channel has no flow-control acknowledgments, so the sender awaits a
pacer before each chunk after the first. Both pacers share one coroutine,
`acquire(nbytes)`, so either can be swapped in without touching the
chunking loop.
"""

import asyncio
import time


class IntervalPacer:
    """Fixed minimum gap between consecutive sends."""

    def __init__(self, interval: float):
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self.interval = interval
        self._last = None

    async def acquire(self, nbytes: int = 0) -> None:
        now = time.monotonic()
        if self._last is not None:
            wait = self._last + self.interval - now
            if wait > 0:
                await asyncio.sleep(wait)
        else:
            # still yield so the event loop can run other tasks
            await asyncio.sleep(0)
        self._last = time.monotonic()


class TokenBucket:
    """Byte-rate limiter: `rate` bytes/second with bursts up to `capacity`."""

    def __init__(self, rate: float, capacity: float):
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be > 0")
        self.rate = rate
        self.capacity = capacity
        self._tokens = capacity
        self._stamp = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._stamp) * self.rate)
        self._stamp = now

    async def acquire(self, nbytes: int = 0) -> None:
        # a request larger than the bucket is charged in full once it is full
        need = min(float(nbytes), self.capacity)
        self._refill()
        while self._tokens < need:
            await asyncio.sleep((need - self._tokens) / self.rate)
            self._refill()
        self._tokens -= need
        if need == 0:
            await asyncio.sleep(0)


class NoPacing:
    """Pacer that only yields to the event loop; used by tests."""

    async def acquire(self, nbytes: int = 0) -> None:
        await asyncio.sleep(0)
