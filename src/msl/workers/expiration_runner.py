"""Standalone runner for the expiration scheduler.

Runs the periodic expiry sweep outside the API process and listens on the
Redis lifecycle channel for app-foreground events.

Usage: python -m msl.workers.expiration_runner
"""

from __future__ import annotations

import asyncio
import signal

import structlog
from arq import create_pool
from arq.connections import RedisSettings

from msl.config import get_settings
from msl.database import close_db, get_session_factory, init_db
from msl.expiration.service import build_reconciler, build_scheduler
from msl.lifecycle import LifecycleBridge, LifecycleSignal
from msl.middleware.logging import setup_logging
from msl.redis_client import close_redis, init_redis

logger = structlog.get_logger(__name__)


async def stop_bridge(bridge: LifecycleBridge, task: asyncio.Task[None]) -> None:
    """Stop the lifecycle bridge; a bridge that already failed is logged, not raised."""
    await bridge.stop()
    try:
        await task
    except Exception:
        logger.exception("lifecycle_bridge_failed")


async def main() -> None:
    """Run the expiration scheduler until SIGINT or SIGTERM."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    redis = await init_redis(settings.redis_url)
    arq_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url)) if settings.redis_url else None

    lifecycle = LifecycleSignal()
    reconciler = build_reconciler(settings, get_session_factory(), redis=redis, arq_pool=arq_pool)
    scheduler = build_scheduler(settings, reconciler, lifecycle)
    bridge = LifecycleBridge(redis, lifecycle) if redis is not None else None

    stopped = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopped.set)

    bridge_task = asyncio.create_task(bridge.start(), name="lifecycle-bridge") if bridge else None
    logger.info("expiration_runner_started", lifecycle_bridge=bridge is not None)

    try:
        async with scheduler:
            await stopped.wait()
        await scheduler.wait_idle()
    finally:
        if bridge is not None and bridge_task is not None:
            await stop_bridge(bridge, bridge_task)
        if arq_pool is not None:
            await arq_pool.aclose()
        await close_redis()
        await close_db()
        logger.info("expiration_runner_stopped")


if __name__ == "__main__":
    asyncio.run(main())
