"""
Constructors for configured cachers.
"""

from typing import Any, Optional, Type, TypeVar

import redis.asyncio as redis

from shared.config import CacherConfig
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from .memory_cacher import MemoryCacher
from .redis_cacher import RedisCacher
from .stores.redis_store import RedisStore

T = TypeVar("T")

logger = get_logger("cacher.factory")


def setup_observability(config: Optional[CacherConfig] = None) -> Optional[MetricsCollector]:
    """Configure structured logging and, if enabled, return a metrics collector.

    Call once at process start; pass the collector to the cacher constructors.
    With ``metrics_port`` set the collector is also served over HTTP.
    """
    config = config or CacherConfig()
    configure_logging(config.service_name, config.log_level)
    if not config.metrics_enabled:
        return None

    metrics = get_metrics_collector(config.service_name)
    if config.metrics_port:
        metrics.start_metrics_server(config.metrics_port)
        logger.info("Metrics server started", port=config.metrics_port)
    return metrics


def create_redis_cacher(
    value_type: Type[T] = Any,  # type: ignore[assignment]
    *,
    config: Optional[CacherConfig] = None,
    client: Optional[redis.Redis] = None,
    metrics: Optional[MetricsCollector] = None,
) -> RedisCacher[T]:
    """Create a Redis-backed cacher.

    Example:

        cacher = create_redis_cacher(str, client=redis.Redis(host="localhost"))
    """
    config = config or CacherConfig()
    if client is None:
        store = RedisStore.from_url(
            config.redis_url,
            socket_timeout=config.redis_socket_timeout,
            socket_connect_timeout=config.redis_connect_timeout,
            scan_count=config.scan_batch_size,
        )
    else:
        store = RedisStore(client, scan_count=config.scan_batch_size)

    logger.info(
        "Redis cacher created",
        namespace=config.namespace or None,
        lock_ttl=config.lock_ttl_seconds,
        wait_timeout=config.wait_timeout_seconds,
    )
    return RedisCacher(store, value_type, config=config, metrics=metrics)


def create_memory_cacher(
    value_type: Type[T] = Any,  # type: ignore[assignment]
    *,
    config: Optional[CacherConfig] = None,
    metrics: Optional[MetricsCollector] = None,
) -> MemoryCacher[T]:
    """Create an in-memory cacher using the configured default TTL and cleanup interval."""
    config = config or CacherConfig()
    logger.info(
        "Memory cacher created",
        default_ttl=config.memory_default_ttl_seconds,
        cleanup_interval=config.memory_cleanup_interval_seconds,
    )
    return MemoryCacher(value_type, config=config, metrics=metrics)
