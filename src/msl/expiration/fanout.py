"""Notification fan-out for settled listings.

Audience rules:
  expired with winner -> winner (payment_required), seller (winner_determined),
                         every other actor or viewer (listing_expired_lost)
  expired, no winner  -> seller (no_winner), viewers (listing_expired_no_winner)

Every emission first looks for the same (recipient, type, listing) inside a
dedup window and reuses it instead of writing a duplicate. Each emission is
committed on its own so one failed recipient never undoes another.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from msl.expiration.store import ListingSnapshot
from msl.expiration.winner import Winner
from msl.notifications.service import create_notification, find_recent_notification

logger = structlog.get_logger(__name__)

PAYMENT_REQUIRED = "payment_required"
WINNER_DETERMINED = "winner_determined"
LISTING_EXPIRED_LOST = "listing_expired_lost"
NO_WINNER = "no_winner"
LISTING_EXPIRED_NO_WINNER = "listing_expired_no_winner"
PAYMENT_REMINDER = "payment_reminder"


def losing_audience(winner_id: str, participants: Iterable[str], viewers: Iterable[str]) -> list[str]:
    """Every actor and viewer of the listing except the winner."""
    audience = {uid for uid in participants if uid} | {uid for uid in viewers if uid}
    audience.discard(winner_id)
    return sorted(audience)


def no_winner_audience(viewers: Iterable[str]) -> list[str]:
    """Distinct viewers of a listing that expired without a winner."""
    return sorted({uid for uid in viewers if uid})


@dataclass(frozen=True)
class Emission:
    notification_id: str
    created: bool


class NotificationFanout:
    """Emits deduplicated notifications about one settled listing."""

    def __init__(
        self,
        db: AsyncSession,
        redis: Any | None = None,
        dedup_window: timedelta = timedelta(minutes=5),
        viewer_dedup_window: timedelta = timedelta(hours=24),
        reminder_dedup_window: timedelta = timedelta(hours=24),
    ) -> None:
        self.db = db
        self.redis = redis
        self.dedup_window = dedup_window
        self.viewer_dedup_window = viewer_dedup_window
        self.reminder_dedup_window = reminder_dedup_window

    async def emit(
        self,
        recipient_id: str,
        title: str,
        body: str,
        data: dict[str, Any],
        window: timedelta,
        now: datetime | None = None,
    ) -> Emission:
        """Create one notification unless an equivalent one is already recent."""
        now = now or datetime.now(timezone.utc)
        type_ = data["type"]
        listing_id = data["listingId"]
        try:
            existing = await find_recent_notification(
                self.db, recipient_id, type_, listing_id, window, now=now,
            )
            if existing is not None:
                logger.debug(
                    "notification_duplicate_skipped",
                    recipient_id=recipient_id,
                    type=type_,
                    listing_id=listing_id,
                )
                return Emission(existing.id, created=False)

            notification = await create_notification(
                self.db, recipient_id, title, body, data, redis=self.redis, now=now,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return Emission(notification.id, created=True)

    async def _emit_each(
        self,
        recipients: Iterable[str],
        title: str,
        body: str,
        data: dict[str, Any],
        window: timedelta,
        now: datetime | None,
    ) -> int:
        """Emit to every recipient; a failure for one is logged and skipped."""
        created = 0
        for recipient_id in recipients:
            try:
                emission = await self.emit(recipient_id, title, body, dict(data), window, now=now)
            except Exception:
                logger.exception(
                    "notification_failed",
                    recipient_id=recipient_id,
                    type=data.get("type"),
                    listing_id=data.get("listingId"),
                )
                continue
            if emission.created:
                created += 1
        return created

    # -- expired with winner ------------------------------------------------

    async def notify_winner(self, listing: ListingSnapshot, winner: Winner, now: datetime | None = None) -> Emission:
        return await self.emit(
            winner.user_id,
            "You Won! Payment Required",
            (
                f'Congratulations! You won "{listing.title}" with {winner.action.value} action. '
                "Please submit your payment proof to complete the purchase."
            ),
            {
                "type": PAYMENT_REQUIRED,
                "listingId": listing.id,
                "actionType": winner.action.value,
                "amount": winner.amount,
                "sellerId": listing.seller_id,
            },
            self.dedup_window,
            now=now,
        )

    async def notify_seller_winner(self, listing: ListingSnapshot, winner: Winner, now: datetime | None = None) -> Emission:
        return await self.emit(
            listing.seller_id,
            "Winner Determined!",
            (
                f'Your listing "{listing.title}" has expired. {winner.user_name} won with '
                f"{winner.action.value} action. They will submit payment proof soon."
            ),
            {
                "type": WINNER_DETERMINED,
                "listingId": listing.id,
                "winnerId": winner.user_id,
                "winnerName": winner.user_name,
                "actionType": winner.action.value,
            },
            self.dedup_window,
            now=now,
        )

    async def notify_losers(
        self,
        listing: ListingSnapshot,
        winner: Winner,
        recipients: Iterable[str],
        now: datetime | None = None,
    ) -> int:
        return await self._emit_each(
            recipients,
            "Listing Expired - You Didn't Win",
            (
                f'The listing "{listing.title}" has expired. {winner.user_name} won with '
                f"{winner.action.value} action. Better luck next time!"
            ),
            {
                "type": LISTING_EXPIRED_LOST,
                "listingId": listing.id,
                "winnerId": winner.user_id,
                "winnerName": winner.user_name,
                "winnerAction": winner.action.value,
            },
            self.dedup_window,
            now,
        )

    # -- expired without winner ---------------------------------------------

    async def notify_seller_no_winner(self, listing: ListingSnapshot, now: datetime | None = None) -> Emission:
        return await self.emit(
            listing.seller_id,
            "Listing Expired - No Winner",
            f'Your listing "{listing.title}" has expired with no actions performed. You can repost it if desired.',
            {"type": NO_WINNER, "listingId": listing.id},
            self.dedup_window,
            now=now,
        )

    async def notify_viewers_no_winner(
        self,
        listing: ListingSnapshot,
        recipients: Iterable[str],
        now: datetime | None = None,
    ) -> int:
        return await self._emit_each(
            recipients,
            "Listing Expired",
            f'The listing "{listing.title}" you viewed has expired with no winner.',
            {"type": LISTING_EXPIRED_NO_WINNER, "listingId": listing.id},
            self.viewer_dedup_window,
            now,
        )

    # -- payment follow-up --------------------------------------------------

    async def notify_payment_reminder(self, listing: ListingSnapshot, now: datetime | None = None) -> Emission:
        return await self.emit(
            listing.winner_id,  # type: ignore[arg-type]
            "Payment Reminder",
            (
                f'Don\'t forget! You won "{listing.title}" and need to submit payment proof '
                "to complete your purchase."
            ),
            {
                "type": PAYMENT_REMINDER,
                "listingId": listing.id,
                "actionType": listing.winner_action,
                "amount": listing.winner_amount,
            },
            self.reminder_dedup_window,
            now=now,
        )
