"""Store queries used by the expiration engine.

Every method is a single read or write against shared, multi-writer
tables. Nothing here assumes exclusive access: the settlement write is a
conditional update that only succeeds while the listing is still active
and unlocked.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from msl.db.models import ActivityLog, Listing, ListingView, Payment
from msl.expiration.winner import ACTION_LABELS, ActionKind, ListingAction, Winner
from msl.listings.state import ListingStatus
from msl.payments.timeout import PENDING_PAYMENT

EXPIRED_WINNER_ACTION = "Listing Expired - Winner"
EXPIRED_NO_WINNER_ACTION = "Listing Expired - No Winner"
SETTLEMENT_ACTIONS = (EXPIRED_WINNER_ACTION, EXPIRED_NO_WINNER_ACTION)


@dataclass(frozen=True)
class ListingSnapshot:
    """Detached copy of the listing fields the engine reads."""

    id: str
    title: str
    seller_id: str
    seller_name: str | None
    status: str
    end_date_time: Any
    locked_by: str | None = None
    winner_id: str | None = None
    winner_name: str | None = None
    winner_action: str | None = None
    winner_amount: float | None = None
    expired_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Listing) -> ListingSnapshot:
        return cls(
            id=row.id,
            title=row.title,
            seller_id=row.seller_id,
            seller_name=row.seller_name,
            status=row.status,
            end_date_time=row.end_date_time,
            locked_by=row.locked_by,
            winner_id=row.winner_id,
            winner_name=row.winner_name,
            winner_action=row.winner_action,
            winner_amount=row.winner_amount,
            expired_at=row.expired_at,
        )


class ExpirationStore:
    """Listing, action, view and activity-log access for one session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def list_active_listings(self) -> list[ListingSnapshot]:
        result = await self.db.execute(
            select(Listing).where(Listing.status == ListingStatus.ACTIVE.value)
        )
        return [ListingSnapshot.from_row(row) for row in result.scalars().all()]

    async def get_listing(self, listing_id: str) -> ListingSnapshot | None:
        """Fresh read of a listing, bypassing the session identity map."""
        result = await self.db.execute(
            select(Listing)
            .where(Listing.id == listing_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return ListingSnapshot.from_row(row) if row is not None else None

    async def has_settlement_entry(self, listing_id: str) -> bool:
        """True when a ``Listing Expired - *`` entry exists for the listing."""
        result = await self.db.execute(
            select(ActivityLog.id)
            .where(
                ActivityLog.listing_id == listing_id,
                ActivityLog.action.in_(SETTLEMENT_ACTIONS),
            )
            .limit(1)
        )
        return result.first() is not None

    async def has_recent_lock(self, listing_id: str, since: datetime) -> bool:
        """True when a user lock action was logged for the listing since ``since``."""
        result = await self.db.execute(
            select(ActivityLog.id)
            .where(
                ActivityLog.listing_id == listing_id,
                ActivityLog.action == ActionKind.LOCK.value,
                ActivityLog.timestamp >= since,
            )
            .limit(1)
        )
        return result.first() is not None

    async def get_actions(self, listing_id: str) -> list[ListingAction]:
        """All Mine/Steal/Lock/Bid actions recorded against the listing."""
        result = await self.db.execute(
            select(ActivityLog)
            .where(
                ActivityLog.listing_id == listing_id,
                ActivityLog.action.in_(ACTION_LABELS),
            )
            .order_by(ActivityLog.timestamp.asc(), ActivityLog.id.asc())
        )
        return [
            ListingAction(
                user_id=row.user_id,
                user_name=row.user_name,
                action=row.action,
                details=row.details,
                timestamp=row.timestamp,
            )
            for row in result.scalars().all()
        ]

    async def get_participants(self, listing_id: str) -> list[str]:
        """Distinct actors that performed an action on the listing."""
        result = await self.db.execute(
            select(ActivityLog.user_id)
            .where(
                ActivityLog.listing_id == listing_id,
                ActivityLog.action.in_(ACTION_LABELS),
                ActivityLog.user_id.is_not(None),
            )
            .distinct()
        )
        return sorted(row[0] for row in result if row[0])

    async def get_viewers(self, listing_id: str) -> list[str]:
        """Distinct users that viewed the listing."""
        result = await self.db.execute(
            select(ListingView.viewer_id)
            .where(ListingView.listing_id == listing_id)
            .distinct()
        )
        return sorted(row[0] for row in result if row[0])

    async def mark_expired(self, listing_id: str, winner: Winner | None, now: datetime) -> bool:
        """Conditionally move the listing to ``expired``.

        Returns False when the listing was no longer active and unlocked at
        write time (another process settled or locked it first).
        """
        values: dict[str, object] = {
            "status": ListingStatus.EXPIRED.value,
            "expired_at": now,
            "last_updated": now,
        }
        if winner is not None:
            values.update(
                winner_id=winner.user_id,
                winner_name=winner.user_name,
                winner_action=winner.action.value,
                winner_amount=winner.amount,
            )

        result = await self.db.execute(
            update(Listing)
            .where(
                Listing.id == listing_id,
                Listing.status == ListingStatus.ACTIVE.value,
                Listing.locked_by.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_settlement(self, listing: ListingSnapshot, winner: Winner | None, now: datetime) -> ActivityLog:
        """Write the system activity entry that fences re-settlement."""
        if winner is not None:
            entry = ActivityLog(
                listing_id=listing.id,
                user_id=winner.user_id,
                user_name=winner.user_name,
                action=EXPIRED_WINNER_ACTION,
                details=(
                    f"Listing expired. {winner.user_name} won with {winner.action.value} "
                    "action and needs to submit payment."
                ),
                system_generated=True,
                timestamp=now,
            )
        else:
            entry = ActivityLog(
                listing_id=listing.id,
                user_id=listing.seller_id,
                user_name=listing.seller_name,
                action=EXPIRED_NO_WINNER_ACTION,
                details="Listing expired with no actions performed.",
                system_generated=True,
                timestamp=now,
            )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list_unpaid_expired(self, expired_before: datetime) -> list[ListingSnapshot]:
        """Expired listings with a winner that has not submitted payment.

        A winner whose payment record has left ``pending_payment`` (timed out
        or cancelled) is no longer owed a reminder.
        """
        closed_payment = exists().where(
            and_(
                Payment.listing_id == Listing.id,
                Payment.buyer_id == Listing.winner_id,
                Payment.status != PENDING_PAYMENT,
            )
        )
        result = await self.db.execute(
            select(Listing).where(
                Listing.status == ListingStatus.EXPIRED.value,
                Listing.winner_id.is_not(None),
                Listing.payment_submitted.is_(False),
                Listing.expired_at <= expired_before,
                ~closed_payment,
            )
        )
        return [ListingSnapshot.from_row(row) for row in result.scalars().all()]
