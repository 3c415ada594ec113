"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from msl.database import close_db, get_engine, get_session_factory, init_db
from msl.db.base import Base
from msl.db.models import ActivityLog, Listing, ListingView, Notification
from msl.expiration.cache import ProcessedListingCache
from msl.expiration.reconciler import ExpirationReconciler

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


class Seeder:
    """Writes listings, actions and views straight into the test store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def listing(
        self,
        listing_id: str = "L1",
        *,
        expires_at: Any = None,
        seller_id: str = "S",
        status: str = "active",
        **extra: Any,
    ) -> str:
        end = expires_at if expires_at is not None else iso(NOW - timedelta(minutes=1))
        async with self.session_factory() as db:
            db.add(Listing(
                id=listing_id,
                title=f"Listing {listing_id}",
                seller_id=seller_id,
                seller_name=f"Seller {seller_id}",
                status=status,
                end_date_time=end,
                created_at=NOW - timedelta(days=1),
                **extra,
            ))
            await db.commit()
        return listing_id

    async def action(
        self,
        listing_id: str,
        user_id: str | None,
        action: str,
        details: str | None = None,
        *,
        user_name: str | None = "",
        timestamp: datetime | None = None,
    ) -> None:
        async with self.session_factory() as db:
            db.add(ActivityLog(
                listing_id=listing_id,
                user_id=user_id,
                user_name=f"User {user_id}" if user_name == "" else user_name,
                action=action,
                details=details,
                timestamp=timestamp or NOW - timedelta(hours=1),
            ))
            await db.commit()

    async def view(self, listing_id: str, viewer_id: str) -> None:
        async with self.session_factory() as db:
            db.add(ListingView(listing_id=listing_id, viewer_id=viewer_id, viewed_at=NOW - timedelta(hours=2)))
            await db.commit()

    async def get_listing(self, listing_id: str) -> Listing | None:
        async with self.session_factory() as db:
            return await db.get(Listing, listing_id)

    async def notifications(self, **filters: Any) -> list[Notification]:
        async with self.session_factory() as db:
            result = await db.execute(select(Notification).filter_by(**filters).order_by(Notification.recipient_id))
            return list(result.scalars().all())

    async def count_activity(self, listing_id: str, action: str) -> int:
        async with self.session_factory() as db:
            return await db.scalar(
                select(func.count(ActivityLog.id)).where(
                    ActivityLog.listing_id == listing_id,
                    ActivityLog.action == action,
                )
            )


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite file database with the full schema."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'msl.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield get_session_factory()
    await close_db()


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def payment_timeout() -> AsyncMock:
    timeout = AsyncMock()
    timeout.start_payment_timeout = AsyncMock(return_value=None)
    return timeout


@pytest.fixture
def reconciler(session_factory, payment_timeout) -> ExpirationReconciler:
    return ExpirationReconciler(
        session_factory,
        payment_timeout=payment_timeout,
        cache=ProcessedListingCache(),
        clock=lambda: NOW,
    )
