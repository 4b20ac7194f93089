"""
Shared fixtures and test doubles for the cacher unit tests.
"""

import asyncio
import os
import sys
from typing import Any, List

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", ".."))

from cacher.stores.memory_store import MemoryStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Sleep replacement that advances a FakeClock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.clock.advance(delay)


class SlowDeleteStore(MemoryStore):
    """Memory store whose deletes take a while, to interrupt prefix scans."""

    def __init__(self, delay: float, **kwargs: Any):
        super().__init__(**kwargs)
        self.delay = delay

    async def delete(self, *keys: str) -> int:
        await asyncio.sleep(self.delay)
        return await super().delete(*keys)


@pytest.fixture
def clock():
    """Fake monotonic clock."""
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    """Sleep that advances the fake clock."""
    return RecordingSleep(clock)


@pytest.fixture
def slow_delete_store_factory():
    """Build memory stores with slow deletes."""
    def factory(delay: float, **kwargs: Any) -> SlowDeleteStore:
        return SlowDeleteStore(delay, **kwargs)
    return factory
