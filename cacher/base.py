"""
Cacher interface shared by the Redis and in-memory coordinators.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, TypeVar

from shared.errors import DeadlineExceededError, ValidationError

T = TypeVar("T")

# Called on a cache miss to produce the value.
FetchFunc = Callable[[], Awaitable[T]]


class Cacher(ABC, Generic[T]):
    """Cache-aside coordinator with stampede prevention.

    Implementations return cached values without locking, and on a miss make
    sure only one concurrent caller per key runs the fetch function while the
    others receive its result.

    Every operation accepts an optional ``timeout`` in seconds; when it elapses
    the operation raises ``DeadlineExceededError``. Cancelling the calling task
    raises ``asyncio.CancelledError`` as usual. Cleanup of coordination state
    runs in both cases.
    """

    @abstractmethod
    async def get_or_fetch(
        self,
        key: str,
        ttl: float,
        fetch_fn: FetchFunc[T],
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """Return the cached value for ``key``, or fetch, cache and return it.

        Args:
            key: The cache key to retrieve or set.
            ttl: Time-to-live in seconds for a fetched value.
            fetch_fn: Coroutine function producing the value on a miss.
            timeout: Overall deadline for this call.

        Exceptions raised by ``fetch_fn`` propagate unchanged and nothing is
        cached for them.
        """

    @abstractmethod
    async def delete(self, key: str, *, timeout: Optional[float] = None) -> None:
        """Remove a key from the cache. Deleting a missing key is a no-op."""

    @abstractmethod
    async def clear(self, *, timeout: Optional[float] = None) -> None:
        """Remove all items reachable through this cacher's store.

        This is broad: a cacher without a namespace on a shared store also
        removes keys written by unrelated code.
        """

    @abstractmethod
    async def item_count(self, *, timeout: Optional[float] = None) -> int:
        """Return the number of items in the cache."""

    @abstractmethod
    async def delete_by_prefix(self, prefix: str, *, timeout: Optional[float] = None) -> int:
        """Delete all keys starting with ``prefix`` and return how many were deleted.

        If the deadline passes mid-scan, the ``DeadlineExceededError`` carries
        the number of keys already deleted in ``deleted``.
        """

    async def close(self) -> None:
        """Release the underlying store."""


def validate_key(key: str, reserved_suffix: Optional[str] = None) -> None:
    """Reject empty keys, and keys that would collide with lock keys."""
    if not isinstance(key, str) or not key:
        raise ValidationError("cache key must be a non-empty string", {"key": key})
    if reserved_suffix and key.endswith(reserved_suffix):
        raise ValidationError(
            f"cache key must not end with the lock suffix {reserved_suffix!r}",
            {"key": key, "suffix": reserved_suffix}
        )


@asynccontextmanager
async def deadline(operation: str, timeout: Optional[float]) -> AsyncIterator[None]:
    """Bound the enclosed block by ``timeout`` seconds, if given."""
    if timeout is None:
        yield
        return

    scope = asyncio.timeout(timeout)
    try:
        async with scope:
            yield
    except TimeoutError as e:
        # A TimeoutError raised by the block itself is not ours to translate.
        if not scope.expired():
            raise
        raise DeadlineExceededError(operation, timeout) from e
