"""Redis connection pool.

Redis is optional for the expiration engine: without it notifications are
only persisted, payment timeouts are not queued and lifecycle events arrive
over HTTP only.
"""

import redis.asyncio as redis

_pool: redis.Redis | None = None


async def init_redis(url: str | None) -> redis.Redis | None:
    """Initialize the Redis connection pool. An empty URL leaves Redis disabled."""
    global _pool  # noqa: PLW0603
    if not url:
        _pool = None
        return None
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    return _pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_optional_redis() -> redis.Redis | None:
    return _pool
