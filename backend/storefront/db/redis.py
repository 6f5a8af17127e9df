"""Process-wide Redis client for the fulfillment queue.

The API only enqueues; the worker polls the queue for its whole lifetime, so
the pool checks idle connections instead of failing the first command after a
Redis failover. Responses are decoded to str, which FulfillmentQueue relies on.
"""

import redis.asyncio as redis

from storefront.core.config import get_settings

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> None:
    """Connect the shared client (no-op when already connected) and ping it."""
    global _redis

    if _redis is not None:
        return

    settings = get_settings()
    _redis = redis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        health_check_interval=settings.redis_health_check_interval,
        socket_connect_timeout=settings.redis_connect_timeout,
    )

    await _redis.ping()


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared client; init_redis() must have run (lifespan or worker main)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
