"""arq worker for deferred payment timeouts.

Import path for arq CLI: arq msl.workers.settings.WorkerSettings
"""

from __future__ import annotations

import logging

from arq.connections import RedisSettings

from msl.config import get_settings
from msl.database import close_db, get_session_factory, init_db
from msl.middleware.logging import setup_logging
from msl.payments.timeout import expire_payment

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize the database on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    ctx["session_factory"] = get_session_factory()
    logger.info("Payment timeout worker started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    await close_db()
    logger.info("Payment timeout worker shut down")


async def expire_payment_job(ctx: dict, payment_id: str) -> bool:  # type: ignore[type-arg]
    """Deferred task queued when a winner is notified.

    Times the payment out if the buyer has still not submitted it. Idempotent:
    a paid or already timed-out payment is left alone.
    """
    async with ctx["session_factory"]() as db:
        try:
            expired = await expire_payment(db, payment_id)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Failed to time out payment %s", payment_id)
            raise

    if expired:
        logger.info("Payment %s timed out", payment_id)
    return expired


class WorkerSettings:
    """arq worker settings for payment timeouts."""

    functions = [expire_payment_job]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url or "redis://localhost:6379/0")
    max_jobs = 10
    job_timeout = 60
    allow_abort_jobs = True
