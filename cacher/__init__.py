"""
Cache-aside fetch coordination with stampede prevention.

Two coordinators share the ``Cacher`` interface:

- ``RedisCacher``: shared Redis store, distributed lock per missing key,
  losers poll with exponential backoff.
- ``MemoryCacher``: in-process expiring table, concurrent misses coalesced
  into one fetch.
"""

from .base import Cacher, FetchFunc
from .codec import JsonCodec
from .factory import create_memory_cacher, create_redis_cacher, setup_observability
from .memory_cacher import MemoryCacher
from .redis_cacher import RedisCacher

__all__ = [
    "Cacher",
    "FetchFunc",
    "JsonCodec",
    "MemoryCacher",
    "RedisCacher",
    "create_memory_cacher",
    "create_redis_cacher",
    "setup_observability",
]
