"""
Unit tests for the in-memory cacher.
"""

import asyncio
import pytest
from dataclasses import dataclass
from typing import List

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from prometheus_client import CollectorRegistry
from structlog.testing import capture_logs

from cacher.base import Cacher
from cacher.memory_cacher import MemoryCacher
from cacher.stores.memory_store import MemoryStore
from shared.config import CacherConfig
from shared.errors import DeadlineExceededError, ValidationError
from shared.metrics import MetricsCollector


@dataclass
class Trade:
    id: str
    quantity: int


class TestMemoryCacher:
    """Test cases for MemoryCacher."""

    @pytest.fixture
    def cacher(self):
        """Create MemoryCacher without a background janitor."""
        return MemoryCacher(str, cleanup_interval=0)

    def test_implements_cacher(self, cacher):
        """MemoryCacher satisfies the Cacher interface."""
        assert isinstance(cacher, Cacher)

    def test_store_built_from_config(self):
        """Default TTL and cleanup interval come from config when not given."""
        config = CacherConfig(memory_default_ttl_seconds=120, memory_cleanup_interval_seconds=5)
        cacher = MemoryCacher(config=config)

        assert cacher.store.default_ttl == 120
        assert cacher.store.cleanup_interval == 5

    @pytest.mark.asyncio
    async def test_cache_miss(self, cacher):
        """A miss calls the fetch function once and returns its value."""
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return "test-value"

        assert await cacher.get_or_fetch("test-key", 60, fetch) == "test-value"
        assert calls == 1

    @pytest.mark.asyncio
    async def test_cache_hit(self, cacher):
        """A hit returns the cached value without fetching."""
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return "cached-value"

        await cacher.get_or_fetch("test-key", 60, fetch)
        assert await cacher.get_or_fetch("test-key", 60, fetch) == "cached-value"
        assert calls == 1

    @pytest.mark.asyncio
    async def test_cached_none_is_a_hit(self):
        """None is a legitimate cached value."""
        cacher = MemoryCacher(cleanup_interval=0)
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return None

        assert await cacher.get_or_fetch("k", 60, fetch) is None
        assert await cacher.get_or_fetch("k", 60, fetch) is None
        assert calls == 1

    @pytest.mark.asyncio
    async def test_fetch_error_not_cached(self, cacher):
        """Errors propagate unchanged and the next call fetches again."""
        error = RuntimeError("fetch failed")

        async def failing():
            raise error

        with pytest.raises(RuntimeError) as exc_info:
            await cacher.get_or_fetch("error-key", 60, failing)
        assert exc_info.value is error
        assert await cacher.item_count() == 0

        async def succeeding():
            return "recovered"

        assert await cacher.get_or_fetch("error-key", 60, succeeding) == "recovered"

    @pytest.mark.asyncio
    async def test_fetch_failure_logged_with_value_type(self):
        """Fetch failures are logged with the key and the cached type."""
        cacher = MemoryCacher(Trade, cleanup_interval=0)

        async def failing():
            raise RuntimeError("fetch failed")

        with capture_logs() as logs:
            with pytest.raises(RuntimeError):
                await cacher.get_or_fetch("trade", 60, failing)

        failures = [entry for entry in logs if entry["event"] == "Fetch function failed"]
        assert len(failures) == 1
        assert failures[0]["key"] == "trade"
        assert failures[0]["value_type"] == "Trade"

    @pytest.mark.asyncio
    async def test_deadline(self, cacher):
        """A slow fetch past the caller's timeout raises DeadlineExceededError."""
        async def slow():
            await asyncio.sleep(1)
            return "slow-value"

        with pytest.raises(DeadlineExceededError):
            await cacher.get_or_fetch("slow-key", 60, slow, timeout=0.05)

    @pytest.mark.asyncio
    async def test_deadline_does_not_cancel_shared_fetch(self, cacher):
        """An impatient caller giving up leaves the fetch running for the others."""
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.1)
            return "value"

        patient = asyncio.create_task(cacher.get_or_fetch("k", 60, slow))
        await asyncio.sleep(0)

        with pytest.raises(DeadlineExceededError):
            await cacher.get_or_fetch("k", 60, slow, timeout=0.02)

        assert await patient == "value"
        assert calls == 1

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self, cacher):
        """Keys must be non-empty."""
        async def fetch():
            return "v"

        with pytest.raises(ValidationError):
            await cacher.get_or_fetch("", 60, fetch)

    @pytest.mark.asyncio
    async def test_concurrent_same_key(self, cacher):
        """Concurrent misses on one key share a single fetch."""
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return "concurrent-value"

        results = await asyncio.gather(*(cacher.get_or_fetch("concurrent-key", 60, fetch) for _ in range(10)))

        assert results == ["concurrent-value"] * 10
        assert calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_same_key_error_shared(self, cacher):
        """Every coalesced caller receives the fetch error."""
        calls = 0

        async def failing():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.02)
            raise ValueError("upstream down")

        results = await asyncio.gather(
            *(cacher.get_or_fetch("k", 60, failing) for _ in range(5)),
            return_exceptions=True,
        )

        assert calls == 1
        assert all(isinstance(r, ValueError) for r in results)

    @pytest.mark.asyncio
    async def test_concurrent_different_keys(self, cacher):
        """Different keys are fetched independently."""
        calls: List[str] = []

        def fetch_for(key):
            async def fetch():
                calls.append(key)
                await asyncio.sleep(0.01)
                return f"value-{key}"
            return fetch

        keys = [f"key{i}" for i in range(5)]
        results = await asyncio.gather(*(cacher.get_or_fetch(k, 60, fetch_for(k)) for k in keys))

        assert results == [f"value-{k}" for k in keys]
        assert sorted(calls) == keys

    @pytest.mark.asyncio
    async def test_structured_values(self):
        """Arbitrary objects are stored as-is."""
        cacher = MemoryCacher(Trade, cleanup_interval=0)
        want = Trade(id="t-1", quantity=42)

        async def fetch():
            return want

        assert await cacher.get_or_fetch("trade", 60, fetch) is want
        assert await cacher.get_or_fetch("trade", 60, fetch) is want

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, clock):
        """Entries are refetched once their TTL passes."""
        cacher = MemoryCacher(str, store=MemoryStore(timer=clock))
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return f"v{calls}"

        assert await cacher.get_or_fetch("k", 10, fetch) == "v1"
        clock.advance(9)
        assert await cacher.get_or_fetch("k", 10, fetch) == "v1"
        clock.advance(2)
        assert await cacher.get_or_fetch("k", 10, fetch) == "v2"

    @pytest.mark.asyncio
    async def test_non_positive_ttl_uses_default(self, clock):
        """ttl <= 0 falls back to the store's default expiration."""
        cacher = MemoryCacher(str, store=MemoryStore(default_ttl=5, timer=clock))

        async def fetch():
            return "v"

        await cacher.get_or_fetch("k", 0, fetch)
        clock.advance(6)

        assert await cacher.item_count() == 0

    @pytest.mark.asyncio
    async def test_delete(self, cacher):
        """Deleted keys are fetched again."""
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return "value"

        await cacher.get_or_fetch("delete-key", 60, fetch)
        await cacher.delete("delete-key")
        await cacher.get_or_fetch("delete-key", 60, fetch)

        assert calls == 2

    @pytest.mark.asyncio
    async def test_delete_nonexistent(self, cacher):
        """Deleting a missing key is a no-op."""
        await cacher.delete("nonexistent-key")

    @pytest.mark.asyncio
    async def test_clear(self, cacher):
        """clear removes every entry."""
        async def fetch():
            return "value"

        for i in range(5):
            await cacher.get_or_fetch(f"key{i}", 60, fetch)

        await cacher.clear()

        assert await cacher.item_count() == 0

    @pytest.mark.asyncio
    async def test_item_count(self, cacher):
        """item_count tracks stored entries."""
        async def fetch():
            return "value"

        assert await cacher.item_count() == 0
        await cacher.get_or_fetch("key1", 60, fetch)
        assert await cacher.item_count() == 1
        await cacher.get_or_fetch("key2", 60, fetch)
        assert await cacher.item_count() == 2

    @pytest.mark.asyncio
    async def test_delete_by_prefix(self, cacher):
        """Only keys with the prefix are removed."""
        async def fetch():
            return "value"

        for key in ("user:1", "user:2", "user:3", "order:1", "order:2"):
            await cacher.get_or_fetch(key, 60, fetch)

        assert await cacher.delete_by_prefix("user:") == 3
        assert await cacher.item_count() == 2

    @pytest.mark.asyncio
    async def test_delete_by_prefix_no_match(self, cacher):
        """A prefix matching nothing deletes nothing."""
        async def fetch():
            return "value"

        await cacher.get_or_fetch("user:1", 60, fetch)

        assert await cacher.delete_by_prefix("nonexistent:") == 0
        assert await cacher.item_count() == 1

    @pytest.mark.asyncio
    async def test_delete_by_prefix_empty_prefix(self, cacher):
        """The empty prefix matches every key."""
        async def fetch():
            return "value"

        for key in ("a", "b", "c"):
            await cacher.get_or_fetch(key, 60, fetch)

        assert await cacher.delete_by_prefix("") == 3
        assert await cacher.item_count() == 0

    @pytest.mark.asyncio
    async def test_delete_by_prefix_deadline(self, slow_delete_store_factory):
        """A deadline mid-scan reports how many keys were already deleted."""
        store = slow_delete_store_factory(0.05)
        cacher = MemoryCacher(str, store=store)
        for i in range(5):
            await store.set(f"user:{i}", "v", 60)

        with pytest.raises(DeadlineExceededError) as exc_info:
            await cacher.delete_by_prefix("user:", timeout=0.12)

        deleted = exc_info.value.deleted
        assert 1 <= deleted <= 4
        assert await cacher.item_count() == 5 - deleted

    @pytest.mark.asyncio
    async def test_metrics_recorded(self):
        """Hits, misses and coalesced waits are counted."""
        metrics = MetricsCollector("cacher", registry=CollectorRegistry())
        cacher = MemoryCacher(str, cleanup_interval=0, metrics=metrics)

        async def fetch():
            await asyncio.sleep(0.02)
            return "v"

        await asyncio.gather(cacher.get_or_fetch("k", 60, fetch), cacher.get_or_fetch("k", 60, fetch))
        await cacher.get_or_fetch("k", 60, fetch)

        assert metrics.sample("cache_misses_total", cache_type="memory") == 2.0
        assert metrics.sample("cache_hits_total", cache_type="memory") == 1.0
        assert metrics.sample("cache_wait_total", cache_type="memory", outcome="coalesced") == 1.0
        assert metrics.sample("cache_fetch_total", cache_type="memory", result="success") == 1.0

    @pytest.mark.asyncio
    async def test_close_stops_janitor(self):
        """close cancels the background cleanup task."""
        cacher = MemoryCacher(str, cleanup_interval=60)

        async def fetch():
            return "v"

        await cacher.get_or_fetch("k", 60, fetch)
        assert cacher.store._janitor is not None

        await cacher.close()

        assert cacher.store._janitor is None
