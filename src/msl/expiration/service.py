"""Wiring of the expiration engine from settings."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from msl.config import Settings
from msl.expiration.cache import ProcessedListingCache
from msl.expiration.reconciler import ExpirationReconciler, ReconcilerConfig
from msl.expiration.scheduler import ExpirationScheduler
from msl.lifecycle import LifecycleSignal
from msl.payments.timeout import ArqPaymentTimeout


def build_reconciler(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    redis: Any | None = None,
    arq_pool: Any | None = None,
) -> ExpirationReconciler:
    return ExpirationReconciler(
        session_factory,
        payment_timeout=ArqPaymentTimeout(
            session_factory,
            arq_pool,
            timeout_seconds=settings.payment_timeout_seconds,
        ),
        cache=ProcessedListingCache(
            ttl_seconds=settings.processed_cache_ttl_seconds,
            max_entries=settings.processed_cache_max_entries,
        ),
        config=ReconcilerConfig.from_settings(settings),
        redis=redis,
    )


def build_scheduler(
    settings: Settings,
    reconciler: ExpirationReconciler,
    lifecycle: LifecycleSignal | None = None,
) -> ExpirationScheduler:
    return ExpirationScheduler(
        reconciler.run_pass,
        interval_seconds=settings.expiration_poll_interval_seconds,
        initial_delay_seconds=settings.expiration_initial_delay_seconds,
        foreground_debounce_seconds=settings.foreground_debounce_seconds,
        lifecycle=lifecycle,
    )
