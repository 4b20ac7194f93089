"""
Store adapter interface shared by the remote and local backends.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional


class Store(ABC):
    """Uniform key/value operations used by the fetch coordinators.

    ``ttl`` values are seconds. A ``ttl`` of zero or less means the backend's
    own default: no expiry for Redis, the table default for the memory store.

    The compare-and-act operations must check the current value and act on it
    as a single atomic step.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None on a miss."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: Any, ttl: float) -> bool:
        """Store a value only if the key does not exist. Returns True if stored."""

    @abstractmethod
    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete ``key`` only if it currently holds ``expected``."""

    @abstractmethod
    async def compare_and_expire(self, key: str, expected: str, ttl: float) -> bool:
        """Reset the expiry of ``key`` only if it currently holds ``expected``."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether a key exists."""

    @abstractmethod
    def scan_prefix(self, prefix: str) -> AsyncIterator[str]:
        """Iterate over keys starting with ``prefix``."""

    @abstractmethod
    async def count(self) -> int:
        """Number of keys in the store."""

    @abstractmethod
    async def flush(self) -> None:
        """Remove every key in the store."""

    async def close(self) -> None:
        """Release backend resources."""
