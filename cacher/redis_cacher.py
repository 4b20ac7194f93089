"""
Redis-coordinated cacher.

Values live in Redis as JSON. On a miss, callers race for a lock stored next to
the entry (``<key>:lock``); the winner runs the fetch function and publishes the
value, the others poll with exponential backoff until the value appears, the
lock disappears without a value, or the wait deadline passes.
"""

import asyncio
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Optional, Type, TypeVar, TYPE_CHECKING

from shared.config import CacherConfig
from shared.errors import DeadlineExceededError
from shared.logging import cache_key_var, get_logger
from .backoff import Backoff, CacheWaiter
from .base import Cacher, FetchFunc, deadline, validate_key
from .codec import JsonCodec
from .lock import Lock, LockManager
from .stores.base import Store

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

T = TypeVar("T")

CACHE_TYPE = "redis"


@dataclass
class _PrefixDeleteProgress:
    deleted: int = 0


class RedisCacher(Cacher[T]):
    """Cacher backed by a shared store with distributed stampede protection.

    Example:

        store = RedisStore.from_url("redis://localhost:6379/0")
        users = RedisCacher(store, User)
        user = await users.get_or_fetch("user:42", 300, lambda: load_user(42))

    With ``namespace`` set, every key is stored under that prefix and
    ``clear``/``item_count`` only touch the namespace. Without it they operate
    on the whole logical database (``FLUSHDB``/``DBSIZE``).
    """

    def __init__(
        self,
        store: Store,
        value_type: Type[T] = Any,  # type: ignore[assignment]
        *,
        config: Optional[CacherConfig] = None,
        metrics: Optional["MetricsCollector"] = None,
        namespace: Optional[str] = None,
    ):
        self.config = config or CacherConfig()
        self.store = store
        self.codec: JsonCodec[T] = JsonCodec(value_type)
        self.metrics = metrics
        self.namespace = self.config.namespace if namespace is None else namespace
        self.logger = get_logger("cacher.redis")

        self.locks = LockManager(
            store,
            ttl=self.config.lock_ttl_seconds,
            suffix=self.config.lock_suffix,
            metrics=metrics,
        )
        self.waiter: CacheWaiter[T] = CacheWaiter(
            store,
            self.codec,
            timeout=self.config.wait_timeout_seconds,
            backoff_factory=partial(
                Backoff,
                self.config.backoff_initial_seconds,
                self.config.backoff_max_seconds,
                self.config.backoff_factor,
            ),
            metrics=metrics,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def _is_lock_key(self, key: str) -> bool:
        return key.endswith(self.config.lock_suffix)

    async def get_or_fetch(
        self,
        key: str,
        ttl: float,
        fetch_fn: FetchFunc[T],
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """Return the cached value, or fetch it under the distributed lock.

        1. Read the entry; a hit returns without taking any lock.
        2. On a miss, try to acquire ``<key>:lock``.
        3. The winner fetches, writes the value with ``ttl`` and only then
           releases the lock. A failing fetch writes nothing.
        4. Losers wait for the winner's value (see ``CacheWaiter``).
        """
        validate_key(key, self.config.lock_suffix)
        context_token = cache_key_var.set(key)
        try:
            async with deadline("get_or_fetch", timeout):
                return await self._get_or_fetch(self._key(key), ttl, fetch_fn)
        finally:
            cache_key_var.reset(context_token)

    async def _get_or_fetch(self, key: str, ttl: float, fetch_fn: FetchFunc[T]) -> T:
        data = await self.store.get(key)
        if data is not None:
            self._record("cache_hits_total", cache_type=CACHE_TYPE)
            return self.codec.decode(data)

        self._record("cache_misses_total", cache_type=CACHE_TYPE)
        self.logger.debug("Cache miss", key=key)

        async with self.locks.hold(key) as lock:
            if lock is not None:
                return await self._fetch_and_publish(key, ttl, fetch_fn, lock)

        return await self.waiter.wait(key, self.locks.lock_key(key))

    async def _fetch_and_publish(self, key: str, ttl: float, fetch_fn: FetchFunc[T], lock: Lock) -> T:
        # A previous holder may have published between our miss and the acquire.
        data = await self.store.get(key)
        if data is not None:
            self._record("cache_hits_total", cache_type=CACHE_TYPE)
            return self.codec.decode(data)

        start = time.perf_counter()
        try:
            result = await fetch_fn()
        except Exception as e:
            self._record("cache_fetch_total", cache_type=CACHE_TYPE, result="error")
            if self.metrics:
                self.metrics.record_error(type(e).__name__)
            self.logger.warning("Fetch function failed", key=key, error=str(e))
            raise

        self._record("cache_fetch_total", cache_type=CACHE_TYPE, result="success")
        if self.metrics:
            self.metrics.observe_histogram(
                "cache_fetch_duration_seconds", time.perf_counter() - start, cache_type=CACHE_TYPE
            )

        result = self.codec.coerce(result)
        data = self.codec.encode(result)
        if lock.lost:
            self.logger.warning("Publishing value after the lock was lost", key=key)
        await self._publish(key, data, ttl)
        return result

    async def _publish(self, key: str, data: bytes, ttl: float) -> None:
        write = asyncio.ensure_future(self.store.set(key, data, ttl))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            # Let the write land before the lock is released on the way out.
            await asyncio.wait([write])
            if not write.cancelled() and write.exception() is not None:
                self.logger.error("Cache write failed after cancellation", key=key, error=str(write.exception()))
            raise

    async def delete(self, key: str, *, timeout: Optional[float] = None) -> None:
        validate_key(key, self.config.lock_suffix)
        async with deadline("delete", timeout):
            await self.store.delete(self._key(key))

    async def clear(self, *, timeout: Optional[float] = None) -> None:
        async with deadline("clear", timeout):
            if self.namespace:
                progress = _PrefixDeleteProgress()
                await self._delete_scan(self.namespace, progress)
                self.logger.info("Cache namespace cleared", namespace=self.namespace, deleted=progress.deleted)
            else:
                await self.store.flush()
                self.logger.info("Cache cleared (whole database)")

    async def item_count(self, *, timeout: Optional[float] = None) -> int:
        async with deadline("item_count", timeout):
            if not self.namespace:
                return await self.store.count()

            count = 0
            async for key in self.store.scan_prefix(self.namespace):
                if not self._is_lock_key(key):
                    count += 1
            return count

    async def delete_by_prefix(self, prefix: str, *, timeout: Optional[float] = None) -> int:
        progress = _PrefixDeleteProgress()
        try:
            async with deadline("delete_by_prefix", timeout):
                await self._delete_scan(self._key(prefix), progress)
        except DeadlineExceededError as e:
            self.logger.warning("Prefix delete interrupted", prefix=prefix, deleted=progress.deleted)
            raise DeadlineExceededError("delete_by_prefix", e.timeout, deleted=progress.deleted) from e.__cause__
        except asyncio.CancelledError:
            self.logger.warning("Prefix delete cancelled", prefix=prefix, deleted=progress.deleted)
            raise
        finally:
            if self.metrics and progress.deleted:
                self.metrics.increment_counter(
                    "cache_prefix_deleted_total", amount=progress.deleted, cache_type=CACHE_TYPE
                )

        self.logger.info("Deleted keys by prefix", prefix=prefix, deleted=progress.deleted)
        return progress.deleted

    async def _delete_scan(self, prefix: str, progress: _PrefixDeleteProgress) -> None:
        # Lock keys are coordination state of in-flight fetches, not entries.
        batch = []
        async for key in self.store.scan_prefix(prefix):
            if self._is_lock_key(key):
                continue
            batch.append(key)
            if len(batch) >= self.config.scan_batch_size:
                progress.deleted += await self.store.delete(*batch)
                batch = []

        if batch:
            progress.deleted += await self.store.delete(*batch)

    async def close(self) -> None:
        await self.store.close()

    def _record(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)
