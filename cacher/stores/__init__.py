"""
Backing store adapters.
"""

from .base import Store
from .memory_store import MemoryStore
from .redis_store import RedisStore

__all__ = ["Store", "MemoryStore", "RedisStore"]
