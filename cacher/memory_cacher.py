"""
In-memory cacher with request coalescing.
"""

import asyncio
import time
from functools import partial
from typing import Any, Optional, Type, TypeVar, TYPE_CHECKING

from shared.config import CacherConfig
from shared.errors import DeadlineExceededError
from shared.logging import cache_key_var, get_logger
from .base import Cacher, FetchFunc, deadline, validate_key
from .singleflight import FlightGroup
from .stores.memory_store import MemoryStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

T = TypeVar("T")

CACHE_TYPE = "memory"


class MemoryCacher(Cacher[T]):
    """Process-local cacher.

    Values are kept as-is in a ``MemoryStore``. Concurrent misses for the same
    key share one in-flight fetch through a ``FlightGroup``, so the fetch
    function runs once and every caller receives its result or its exception.
    """

    def __init__(
        self,
        value_type: Type[T] = Any,  # type: ignore[assignment]
        *,
        default_ttl: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
        store: Optional[MemoryStore] = None,
        config: Optional[CacherConfig] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.config = config or CacherConfig()
        self.value_type = value_type
        self.metrics = metrics
        self.logger = get_logger("cacher.memory")

        if store is None:
            store = MemoryStore(
                default_ttl=default_ttl if default_ttl is not None else self.config.memory_default_ttl_seconds,
                cleanup_interval=(
                    cleanup_interval if cleanup_interval is not None
                    else self.config.memory_cleanup_interval_seconds
                ),
                max_entries=self.config.memory_max_entries,
            )
        self.store = store
        self.group: FlightGroup[T] = FlightGroup()

    async def get_or_fetch(
        self,
        key: str,
        ttl: float,
        fetch_fn: FetchFunc[T],
        *,
        timeout: Optional[float] = None,
    ) -> T:
        validate_key(key)
        context_token = cache_key_var.set(key)
        try:
            async with deadline("get_or_fetch", timeout):
                found, value = await self.store.lookup(key)
                if found:
                    self._record("cache_hits_total", cache_type=CACHE_TYPE)
                    return value

                self._record("cache_misses_total", cache_type=CACHE_TYPE)
                if self.group.in_flight(key):
                    self._record("cache_wait_total", cache_type=CACHE_TYPE, outcome="coalesced")
                return await self.group.do(key, partial(self._fetch_and_store, key, ttl, fetch_fn))
        finally:
            cache_key_var.reset(context_token)

    async def _fetch_and_store(self, key: str, ttl: float, fetch_fn: FetchFunc[T]) -> T:
        # Another flight for this key may have finished since our miss.
        found, value = await self.store.lookup(key)
        if found:
            return value

        start = time.perf_counter()
        try:
            result = await fetch_fn()
        except Exception as e:
            self._record("cache_fetch_total", cache_type=CACHE_TYPE, result="error")
            if self.metrics:
                self.metrics.record_error(type(e).__name__)
            self.logger.warning("Fetch function failed", key=key, value_type=self.value_type_name, error=str(e))
            raise

        self._record("cache_fetch_total", cache_type=CACHE_TYPE, result="success")
        if self.metrics:
            self.metrics.observe_histogram(
                "cache_fetch_duration_seconds", time.perf_counter() - start, cache_type=CACHE_TYPE
            )

        await self.store.set(key, result, ttl)
        return result

    async def delete(self, key: str, *, timeout: Optional[float] = None) -> None:
        validate_key(key)
        async with deadline("delete", timeout):
            await self.store.delete(key)

    async def clear(self, *, timeout: Optional[float] = None) -> None:
        async with deadline("clear", timeout):
            await self.store.flush()
        self.logger.info("Cache cleared")

    async def item_count(self, *, timeout: Optional[float] = None) -> int:
        async with deadline("item_count", timeout):
            return await self.store.count()

    async def delete_by_prefix(self, prefix: str, *, timeout: Optional[float] = None) -> int:
        deleted = 0
        try:
            async with deadline("delete_by_prefix", timeout):
                async for key in self.store.scan_prefix(prefix):
                    # Yield so cancellation and the deadline can land between keys.
                    await asyncio.sleep(0)
                    deleted += await self.store.delete(key)
        except DeadlineExceededError as e:
            self.logger.warning("Prefix delete interrupted", prefix=prefix, deleted=deleted)
            raise DeadlineExceededError("delete_by_prefix", e.timeout, deleted=deleted) from e.__cause__
        except asyncio.CancelledError:
            self.logger.warning("Prefix delete cancelled", prefix=prefix, deleted=deleted)
            raise
        finally:
            if self.metrics and deleted:
                self.metrics.increment_counter("cache_prefix_deleted_total", amount=deleted, cache_type=CACHE_TYPE)

        self.logger.info("Deleted keys by prefix", prefix=prefix, deleted=deleted)
        return deleted

    @property
    def value_type_name(self) -> str:
        return getattr(self.value_type, "__name__", repr(self.value_type))

    async def close(self) -> None:
        await self.store.close()

    def _record(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)
