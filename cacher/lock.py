"""
Ownership-tagged, auto-expiring locks stored next to the cache entries.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, TYPE_CHECKING

from shared.errors import StoreError
from shared.logging import get_logger
from .stores.base import Store

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_LOCK_TTL = 30.0
DEFAULT_LOCK_SUFFIX = ":lock"


@dataclass
class Lock:
    """A held lock: the lock key, the owner token written there, and its TTL."""

    key: str
    token: str
    ttl: float
    lost: bool = False


class LockManager:
    """Acquire, extend and release locks in a shared store.

    Extend and release compare the stored token with the caller's token and act
    in one atomic store operation, so a holder whose lock expired and was taken
    over cannot touch the new owner's lock.
    """

    def __init__(
        self,
        store: Store,
        ttl: float = DEFAULT_LOCK_TTL,
        suffix: str = DEFAULT_LOCK_SUFFIX,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if ttl <= 0:
            raise ValueError("lock ttl must be positive")
        self.store = store
        self.ttl = ttl
        self.suffix = suffix
        self.metrics = metrics
        self.logger = get_logger("cacher.lock")

    @property
    def extend_interval(self) -> float:
        return self.ttl / 3

    def lock_key(self, key: str) -> str:
        return f"{key}{self.suffix}"

    @staticmethod
    def new_token() -> str:
        """Token unique to one acquisition attempt."""
        return f"{time.time_ns()}-{uuid.uuid4().hex}"

    async def acquire(self, key: str) -> Optional[Lock]:
        """Try to take the lock for ``key``. Returns None if someone else holds it."""
        lock = Lock(key=self.lock_key(key), token=self.new_token(), ttl=self.ttl)
        acquired = await self.store.set_if_absent(lock.key, lock.token, lock.ttl)
        self._record("cache_lock_acquire_total", result="acquired" if acquired else "contended")
        if not acquired:
            self.logger.debug("Lock held elsewhere", lock_key=lock.key)
            return None

        self.logger.debug("Lock acquired", lock_key=lock.key, ttl=lock.ttl)
        return lock

    async def extend(self, lock: Lock) -> bool:
        """Reset the lock's expiry to its full TTL if still owned."""
        return await self.store.compare_and_expire(lock.key, lock.token, lock.ttl)

    async def release(self, lock: Lock) -> bool:
        """Delete the lock if still owned. No-op otherwise."""
        released = await self.store.compare_and_delete(lock.key, lock.token)
        if not released:
            self.logger.warning("Lock no longer owned at release", lock_key=lock.key)
        return released

    async def _keep_alive(self, lock: Lock) -> None:
        while True:
            await asyncio.sleep(self.extend_interval)
            try:
                extended = await self.extend(lock)
            except StoreError as e:
                # Transient store failure; the next tick still lands before expiry.
                self.logger.warning("Lock extension failed", lock_key=lock.key, error=str(e))
                continue

            if not extended:
                lock.lost = True
                self._record("cache_lock_lost_total")
                self.logger.warning("Lock lost, stopping extension", lock_key=lock.key)
                return

    async def _release_quietly(self, lock: Lock) -> None:
        try:
            await self.release(lock)
        except StoreError as e:
            # The lock still expires on its own after ttl.
            self.logger.error("Lock release failed", lock_key=lock.key, error=str(e))

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[Optional[Lock]]:
        """Hold the lock for ``key`` for the duration of the block.

        Yields None when the lock is held by someone else. When acquired, the
        lock is extended every ``ttl / 3`` seconds in the background and
        released on exit, even if the block raised or the calling task was
        cancelled.
        """
        lock = await self.acquire(key)
        if lock is None:
            yield None
            return

        extender = asyncio.create_task(self._keep_alive(lock))
        try:
            yield lock
        finally:
            extender.cancel()
            await asyncio.shield(self._release_quietly(lock))

    def _record(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)
