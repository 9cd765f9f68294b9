"""
Clock abstraction for timer-driven behavior

Breaker reset windows, retry backoff, throttling and log batching all read
time and sleep through a clock so tests can drive virtual time.
"""

import asyncio
import time
from typing import List


class Clock:
    """Source of time and suspension for the resilience core"""

    def now(self) -> float:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    """Monotonic wall clock backed by asyncio timers"""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock(Clock):
    """
    Deterministic clock for tests.

    ``sleep`` advances virtual time immediately and records the requested
    delay, yielding once to the event loop so cancellation can land.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    def set(self, value: float) -> None:
        self._now = value

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)
        self._now += max(0.0, seconds)


default_clock = SystemClock()
