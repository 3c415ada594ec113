"""Payment timeout for listing winners.

When a winner is notified, a ``payments`` record is opened (or re-armed) in
``pending_payment`` and a deferred arq job is queued to time it out. The job
id is derived from (listing, winner) so repeated starts never stack jobs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from msl.db.models import Listing, Payment
from msl.listings.expiry import ensure_utc

logger = logging.getLogger(__name__)

PENDING_PAYMENT = "pending_payment"
TIMED_OUT = "timed_out"


class PaymentTimeout(Protocol):
    async def start_payment_timeout(
        self,
        listing_id: str,
        winner_id: str,
        action_kind: str,
        amount: float,
    ) -> None: ...


def payment_timeout_job_id(listing_id: str, winner_id: str) -> str:
    return f"payment-timeout:{listing_id}:{winner_id}"


async def open_payment(
    db: AsyncSession,
    listing_id: str,
    winner_id: str,
    action_kind: str,
    amount: float,
    timeout: timedelta,
    now: datetime | None = None,
) -> Payment:
    """Create the winner's payment record, or re-arm the existing one."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(Payment).where(
            Payment.listing_id == listing_id,
            Payment.buyer_id == winner_id,
        )
    )
    payment = result.scalars().first()

    if payment is None:
        seller_id = await db.scalar(select(Listing.seller_id).where(Listing.id == listing_id))
        payment = Payment(
            listing_id=listing_id,
            buyer_id=winner_id,
            seller_id=seller_id,
            action_type=action_kind,
            amount=amount,
            status=PENDING_PAYMENT,
            expiration_time=now + timeout,
            created_at=now,
            last_updated=now,
        )
        db.add(payment)
    else:
        payment.status = PENDING_PAYMENT
        payment.expiration_time = now + timeout
        payment.last_updated = now

    await db.flush()
    return payment


async def expire_payment(db: AsyncSession, payment_id: str, now: datetime | None = None) -> bool:
    """Time out a payment that is still pending past its expiration time.

    Returns True if the payment was timed out by this call.
    """
    now = now or datetime.now(timezone.utc)
    payment = await db.get(Payment, payment_id)
    if payment is None or payment.status != PENDING_PAYMENT:
        return False
    if payment.expiration_time is not None and ensure_utc(payment.expiration_time) > now:
        return False

    payment.status = TIMED_OUT
    payment.cancel_reason = "Payment timeout - buyer did not submit payment within time limit"
    payment.last_updated = now
    await db.flush()
    return True


class ArqPaymentTimeout:
    """PaymentTimeout backed by a payments table and deferred arq jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        arq_pool: Any,
        timeout_seconds: int = 180,
    ) -> None:
        self._session_factory = session_factory
        self._arq = arq_pool
        self._timeout = timedelta(seconds=timeout_seconds)

    async def start_payment_timeout(
        self,
        listing_id: str,
        winner_id: str,
        action_kind: str,
        amount: float,
    ) -> None:
        async with self._session_factory() as db:
            payment = await open_payment(db, listing_id, winner_id, action_kind, amount, self._timeout)
            payment_id = payment.id
            await db.commit()

        if self._arq is None:
            logger.warning("No arq pool configured; payment %s will not time out", payment_id)
            return

        job = await self._arq.enqueue_job(
            "expire_payment_job",
            payment_id,
            _job_id=payment_timeout_job_id(listing_id, winner_id),
            _defer_by=self._timeout,
        )
        logger.info(
            "Payment timeout started for listing %s, winner %s (payment=%s, queued=%s)",
            listing_id, winner_id, payment_id, job is not None,
        )
