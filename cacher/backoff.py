"""
Bounded exponential-backoff polling for callers that lost the lock race.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, TYPE_CHECKING

from shared.errors import FetchFailedError, WaitTimeoutError
from shared.logging import get_logger
from .codec import JsonCodec
from .stores.base import Store

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

T = TypeVar("T")

DEFAULT_WAIT_TIMEOUT = 30.0
DEFAULT_BACKOFF_INITIAL = 0.01
DEFAULT_BACKOFF_MAX = 0.5


class Backoff:
    """Delay sequence starting at ``initial``, multiplied by ``factor``, capped at ``maximum``."""

    def __init__(
        self,
        initial: float = DEFAULT_BACKOFF_INITIAL,
        maximum: float = DEFAULT_BACKOFF_MAX,
        factor: float = 2.0,
    ):
        if initial <= 0 or maximum <= 0:
            raise ValueError("backoff delays must be positive")
        self.initial = initial
        self.maximum = max(initial, maximum)
        self.factor = factor
        self.current = initial

    def next(self) -> float:
        """Return the delay to sleep now and advance the sequence."""
        delay = self.current
        self.current = min(self.current * self.factor, self.maximum)
        return delay

    def reset(self) -> None:
        self.current = self.initial


class CacheWaiter(Generic[T]):
    """Polls the store until another caller's fetch publishes a value.

    Outcomes per ``wait`` call:

    - the entry appears: decoded and returned;
    - the lock disappears with no entry: one more read closes the window
      between the value write and the lock release, then ``FetchFailedError``;
    - the deadline passes: ``WaitTimeoutError``.

    Every iteration awaits the store or a sleep, so cancelling the waiting task
    stops it at once.
    """

    def __init__(
        self,
        store: Store,
        codec: JsonCodec[T],
        timeout: float = DEFAULT_WAIT_TIMEOUT,
        backoff_factory: Callable[[], Backoff] = Backoff,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.codec = codec
        self.timeout = timeout
        self.backoff_factory = backoff_factory
        self.metrics = metrics
        self.logger = get_logger("cacher.waiter")
        self._clock = clock
        self._sleep = sleep

    async def wait(self, key: str, lock_key: str) -> T:
        backoff = self.backoff_factory()
        deadline = self._clock() + self.timeout
        polls = 0

        while True:
            if self._clock() > deadline:
                self._record("timeout")
                self.logger.warning("Timed out waiting for cache", key=key, polls=polls, timeout=self.timeout)
                raise WaitTimeoutError(key, self.timeout)

            polls += 1
            data = await self.store.get(key)
            if data is not None:
                self._record("value")
                return self.codec.decode(data)

            if not await self.store.exists(lock_key):
                data = await self.store.get(key)
                if data is not None:
                    self._record("value")
                    return self.codec.decode(data)

                self._record("fetch_failed")
                self.logger.warning("Lock released without a cached value", key=key, polls=polls)
                raise FetchFailedError(key)

            await self._sleep(backoff.next())

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_wait_total", cache_type="redis", outcome=outcome)
