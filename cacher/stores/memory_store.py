"""
In-process expiring table used by the local-coordinated cacher.
"""

import asyncio
import contextlib
import math
import threading
import time
from typing import Any, AsyncIterator, Callable, NamedTuple, Optional, Tuple

from cachetools import TLRUCache

from shared.logging import get_logger
from .base import Store

DEFAULT_MAX_ENTRIES = 1_000_000


class _Entry(NamedTuple):
    value: Any
    ttl: Optional[float]


def _time_to_use(key: str, entry: _Entry, now: float) -> float:
    if entry.ttl is None:
        return math.inf
    return now + entry.ttl


class MemoryStore(Store):
    """Per-item TTL table on top of ``cachetools.TLRUCache``.

    Expired entries are dropped lazily on access. When ``cleanup_interval`` is
    set a background task also purges them periodically; it starts on first use
    and stops on ``close()``.
    """

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl if default_ttl and default_ttl > 0 else None
        self.cleanup_interval = cleanup_interval
        self.logger = get_logger("cacher.store.memory")
        self._table: TLRUCache = TLRUCache(maxsize=max_entries, ttu=_time_to_use, timer=timer)
        self._lock = threading.RLock()
        self._janitor: Optional[asyncio.Task] = None

    def _effective_ttl(self, ttl: float) -> Optional[float]:
        if ttl > 0:
            return ttl
        return self.default_ttl

    def _ensure_janitor(self) -> None:
        if self.cleanup_interval is None or self.cleanup_interval <= 0:
            return
        if self._janitor is None or self._janitor.done():
            self._janitor = asyncio.get_running_loop().create_task(self._run_janitor())

    async def _run_janitor(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            removed = self.expire()
            if removed:
                self.logger.debug("Purged expired entries", count=removed)

    def expire(self) -> int:
        """Drop expired entries now, returning how many were removed."""
        with self._lock:
            return len(self._table.expire())

    async def get(self, key: str) -> Optional[Any]:
        _, value = await self.lookup(key)
        return value

    async def lookup(self, key: str) -> Tuple[bool, Any]:
        """Return ``(found, value)`` so that a stored None is not a miss."""
        self._ensure_janitor()
        with self._lock:
            entry = self._table.get(key)
        if entry is None:
            return False, None
        return True, entry.value

    async def set(self, key: str, value: Any, ttl: float) -> None:
        self._ensure_janitor()
        with self._lock:
            self._table[key] = _Entry(value, self._effective_ttl(ttl))

    async def set_if_absent(self, key: str, value: Any, ttl: float) -> bool:
        self._ensure_janitor()
        with self._lock:
            if key in self._table:
                return False
            self._table[key] = _Entry(value, self._effective_ttl(ttl))
            return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            entry = self._table.get(key)
            if entry is None or entry.value != expected:
                return False
            del self._table[key]
            return True

    async def compare_and_expire(self, key: str, expected: str, ttl: float) -> bool:
        with self._lock:
            entry = self._table.get(key)
            if entry is None or entry.value != expected:
                return False
            self._table[key] = _Entry(entry.value, self._effective_ttl(ttl))
            return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        with self._lock:
            for key in keys:
                if self._table.pop(key, None) is not None:
                    deleted += 1
        return deleted

    async def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._table

    async def scan_prefix(self, prefix: str) -> AsyncIterator[str]:
        with self._lock:
            self._table.expire()
            keys = [key for key in self._table.keys() if key.startswith(prefix)]
        for key in keys:
            yield key

    async def count(self) -> int:
        with self._lock:
            self._table.expire()
            return len(self._table)

    async def flush(self) -> None:
        with self._lock:
            self._table.clear()

    async def close(self) -> None:
        if self._janitor is not None:
            self._janitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._janitor
            self._janitor = None
