"""
Redis store adapter for the remote-coordinated cacher.
"""

from typing import AsyncIterator, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreError
from shared.logging import get_logger
from .base import Store

# Delete the key only while it still holds the caller's token.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Reset the key's expiry only while it still holds the caller's token.
EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""

_GLOB_SPECIAL = "\\*?[]"


def escape_glob(value: str) -> str:
    """Escape Redis MATCH pattern metacharacters."""
    return "".join("\\" + ch if ch in _GLOB_SPECIAL else ch for ch in value)


def _to_ms(ttl: float) -> int:
    return max(1, int(ttl * 1000))


def _decode_key(key: Union[bytes, str]) -> str:
    return key.decode("utf-8") if isinstance(key, bytes) else key


class RedisStore(Store):
    """Store adapter over a ``redis.asyncio`` client."""

    def __init__(self, client: redis.Redis, scan_count: int = 500):
        self.client = client
        self.scan_count = scan_count
        self.logger = get_logger("cacher.store.redis")
        self._release_script = client.register_script(RELEASE_SCRIPT)
        self._extend_script = client.register_script(EXTEND_SCRIPT)

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        *,
        socket_timeout: Optional[float] = 5.0,
        socket_connect_timeout: Optional[float] = 5.0,
        scan_count: int = 500,
    ) -> "RedisStore":
        """Create a store with its own connection pool."""
        client = redis.from_url(
            redis_url,
            decode_responses=False,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            retry_on_timeout=True,
            health_check_interval=30
        )
        return cls(client, scan_count=scan_count)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            raise StoreError("ping", str(e)) from e

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self.client.get(key)
        except RedisError as e:
            raise StoreError("get", str(e), {"key": key}) from e

    async def set(self, key: str, value: Union[bytes, str], ttl: float) -> None:
        try:
            if ttl > 0:
                await self.client.set(key, value, px=_to_ms(ttl))
            else:
                await self.client.set(key, value)
        except RedisError as e:
            raise StoreError("set", str(e), {"key": key}) from e

    async def set_if_absent(self, key: str, value: Union[bytes, str], ttl: float) -> bool:
        try:
            if ttl > 0:
                result = await self.client.set(key, value, nx=True, px=_to_ms(ttl))
            else:
                result = await self.client.set(key, value, nx=True)
        except RedisError as e:
            raise StoreError("set_if_absent", str(e), {"key": key}) from e
        return bool(result)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        try:
            result = await self._release_script(keys=[key], args=[expected])
        except RedisError as e:
            raise StoreError("compare_and_delete", str(e), {"key": key}) from e
        return int(result or 0) == 1

    async def compare_and_expire(self, key: str, expected: str, ttl: float) -> bool:
        try:
            result = await self._extend_script(keys=[key], args=[expected, _to_ms(ttl)])
        except RedisError as e:
            raise StoreError("compare_and_expire", str(e), {"key": key}) from e
        return int(result or 0) == 1

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self.client.delete(*keys))
        except RedisError as e:
            raise StoreError("delete", str(e), {"keys": len(keys)}) from e

    async def exists(self, key: str) -> bool:
        try:
            return int(await self.client.exists(key)) > 0
        except RedisError as e:
            raise StoreError("exists", str(e), {"key": key}) from e

    async def scan_prefix(self, prefix: str) -> AsyncIterator[str]:
        # SCAN is used instead of KEYS so large keyspaces do not block the server
        pattern = escape_glob(prefix) + "*"
        try:
            async for raw_key in self.client.scan_iter(match=pattern, count=self.scan_count):
                key = _decode_key(raw_key)
                if key.startswith(prefix):
                    yield key
        except RedisError as e:
            raise StoreError("scan", str(e), {"prefix": prefix}) from e

    async def count(self) -> int:
        try:
            return int(await self.client.dbsize())
        except RedisError as e:
            raise StoreError("count", str(e)) from e

    async def flush(self) -> None:
        try:
            await self.client.flushdb()
        except RedisError as e:
            raise StoreError("flush", str(e)) from e

    async def close(self) -> None:
        await self.client.aclose()
        self.logger.info("Redis store closed")
