"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from arq import create_pool
from arq.connections import RedisSettings
from fastapi import FastAPI

from msl.config import Settings, get_settings
from msl.database import close_db, get_session_factory, init_db
from msl.expiration.router import router as expiration_router
from msl.expiration.service import build_reconciler, build_scheduler
from msl.health.router import router as health_router
from msl.lifecycle import LifecycleSignal
from msl.middleware import setup_middleware
from msl.redis_client import close_redis, init_redis


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup and shutdown lifecycle."""
        await init_db(settings.database_url)
        redis = await init_redis(settings.redis_url)
        arq_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url)) if settings.redis_url else None

        lifecycle = LifecycleSignal()
        reconciler = build_reconciler(settings, get_session_factory(), redis=redis, arq_pool=arq_pool)
        scheduler = build_scheduler(settings, reconciler, lifecycle)
        app.state.lifecycle = lifecycle
        app.state.reconciler = reconciler
        app.state.scheduler = scheduler
        app.state.scheduler_enabled = settings.expiration_scheduler_enabled

        try:
            if settings.expiration_scheduler_enabled:
                await scheduler.start()
            yield
        finally:
            await scheduler.stop()
            await scheduler.wait_idle()
            if arq_pool is not None:
                await arq_pool.aclose()
            await close_redis()
            await close_db()

    app = FastAPI(
        title="Marketplace Expiration Service",
        description="Settles Mine-Steal-Lock auctions whose countdown has elapsed",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(expiration_router)

    return app
