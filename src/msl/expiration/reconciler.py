"""Listing expiration reconciler that settles auctions whose countdown elapsed.

One sweep:
  1. read every active listing
  2. resolve each expiry and keep those that expired inside the catch-up window
  3. drop listings already handled, mid-processing or locked
  4. per candidate: fresh re-read, re-check status / lock / settlement fence,
     resolve the winner, conditionally write ``expired``, then fan out
     notifications and record the settlement in the activity log

Correctness across processes rests on the re-read + conditional write and on
the activity-log fence, never on in-memory state. A sweep can therefore run
concurrently in several processes and be retried at will.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from msl.config import Settings
from msl.expiration.cache import ProcessedListingCache
from msl.expiration.fanout import NotificationFanout, losing_audience, no_winner_audience
from msl.expiration.store import ExpirationStore, ListingSnapshot
from msl.expiration.winner import ListingAction, Winner, resolve_winner
from msl.listings.expiry import resolve_expiry
from msl.listings.state import InvalidTransitionError, ListingStatus, transition
from msl.payments.timeout import PaymentTimeout

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReconcilerConfig:
    catchup_window: timedelta = timedelta(hours=24)
    lock_lookback: timedelta = timedelta(hours=24)
    dedup_window: timedelta = timedelta(minutes=5)
    no_winner_dedup_window: timedelta = timedelta(hours=24)
    reminder_after: timedelta = timedelta(hours=24)
    reminder_dedup_window: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls, settings: Settings) -> ReconcilerConfig:
        return cls(
            catchup_window=timedelta(hours=settings.expiration_catchup_window_hours),
            lock_lookback=timedelta(hours=settings.lock_lookback_hours),
            dedup_window=timedelta(seconds=settings.notification_dedup_window_seconds),
            no_winner_dedup_window=timedelta(hours=settings.no_winner_dedup_window_hours),
            reminder_after=timedelta(hours=settings.payment_reminder_after_hours),
            reminder_dedup_window=timedelta(hours=settings.payment_reminder_dedup_hours),
        )


class Outcome(str, Enum):
    SETTLED_WINNER = "settled_winner"
    SETTLED_NO_WINNER = "settled_no_winner"
    SKIPPED = "skipped"


@dataclass
class SweepResult:
    scanned: int = 0
    candidates: int = 0
    settled_winner: int = 0
    settled_no_winner: int = 0
    skipped: int = 0
    failed: int = 0
    abandoned: int = 0
    unparseable: int = 0
    settled_ids: list[str] = field(default_factory=list)

    @property
    def settled(self) -> int:
        return self.settled_winner + self.settled_no_winner


@dataclass
class PassResult:
    sweep: SweepResult | None = None
    reminders_sent: int = 0


class ExpirationReconciler:
    """Settles expired listings. Safe to run repeatedly and concurrently."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        payment_timeout: PaymentTimeout | None = None,
        cache: ProcessedListingCache | None = None,
        config: ReconcilerConfig | None = None,
        redis: Any | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._payment_timeout = payment_timeout
        self.cache = cache if cache is not None else ProcessedListingCache()
        self.config = config or ReconcilerConfig()
        self._redis = redis
        self._clock = clock
        self._processing: set[str] = set()

    def _fanout(self, db: AsyncSession) -> NotificationFanout:
        return NotificationFanout(
            db,
            redis=self._redis,
            dedup_window=self.config.dedup_window,
            viewer_dedup_window=self.config.no_winner_dedup_window,
            reminder_dedup_window=self.config.reminder_dedup_window,
        )

    # ------------------------------------------------------------------
    # Pass / sweep
    # ------------------------------------------------------------------

    async def run_pass(self) -> PassResult:
        """Expiry sweep followed by payment reminders. Never raises."""
        result = PassResult()
        try:
            result.sweep = await self.sweep()
        except Exception:
            logger.exception("expiration_sweep_failed")
        try:
            result.reminders_sent = await self.check_payment_reminders()
        except Exception:
            logger.exception("payment_reminder_sweep_failed")
        return result

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or self._clock()
        result = SweepResult()

        async with self._session_factory() as db:
            listings = await ExpirationStore(db).list_active_listings()
        result.scanned = len(listings)

        candidates = self.select_candidates(listings, now, result)
        result.candidates = len(candidates)

        for listing in candidates:
            try:
                outcome = await self.process_candidate(listing.id, now)
            except Exception:
                result.failed += 1
                logger.exception("expired_listing_failed", listing_id=listing.id)
                continue

            if outcome is Outcome.SETTLED_WINNER:
                result.settled_winner += 1
                result.settled_ids.append(listing.id)
            elif outcome is Outcome.SETTLED_NO_WINNER:
                result.settled_no_winner += 1
                result.settled_ids.append(listing.id)
            else:
                result.skipped += 1

        summary = asdict(result)
        summary.pop("settled_ids")
        summary.update({f"cache_{key}": value for key, value in self.cache.stats.items()})
        if result.candidates:
            logger.info("expiration_sweep_complete", **summary)
        else:
            logger.debug("expiration_sweep_complete", **summary)
        return result

    def select_candidates(
        self,
        listings: Iterable[ListingSnapshot],
        now: datetime,
        result: SweepResult | None = None,
    ) -> list[ListingSnapshot]:
        """Listings that expired within the catch-up window and are not exempt."""
        result = result if result is not None else SweepResult()
        window_start = now - self.config.catchup_window
        candidates = []

        for listing in listings:
            if listing.id in self.cache or listing.id in self._processing:
                continue
            if listing.locked_by or listing.status == ListingStatus.LOCKED.value:
                continue

            expiry = resolve_expiry(listing.end_date_time)
            if expiry is None:
                result.unparseable += 1
                logger.warning(
                    "listing_expiry_unparseable",
                    listing_id=listing.id,
                    end_date_time=repr(listing.end_date_time),
                )
                continue
            if expiry > now:
                continue
            if expiry < window_start:
                result.abandoned += 1
                continue

            candidates.append(listing)

        return candidates

    async def process_candidate(self, listing_id: str, now: datetime | None = None) -> Outcome:
        """Settle one listing if it is still settleable. Raises on store failure."""
        now = now or self._clock()
        if listing_id in self._processing:
            return Outcome.SKIPPED

        self._processing.add(listing_id)
        try:
            outcome = await self._settle(listing_id, now)
        finally:
            self._processing.discard(listing_id)

        self.cache.add(listing_id)
        return outcome

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _settle(self, listing_id: str, now: datetime) -> Outcome:
        async with self._session_factory() as db:
            store = ExpirationStore(db)

            listing = await store.get_listing(listing_id)
            if listing is None:
                logger.warning("expired_listing_missing", listing_id=listing_id)
                return Outcome.SKIPPED
            if listing.locked_by:
                logger.debug("expired_listing_locked", listing_id=listing_id, locked_by=listing.locked_by)
                return Outcome.SKIPPED
            try:
                transition(listing.status, ListingStatus.EXPIRED)
            except InvalidTransitionError:
                logger.debug("expired_listing_no_longer_active", listing_id=listing_id, status=listing.status)
                return Outcome.SKIPPED
            if await store.has_settlement_entry(listing_id):
                logger.debug("expired_listing_already_settled", listing_id=listing_id)
                return Outcome.SKIPPED
            if await store.has_recent_lock(listing_id, since=now - self.config.lock_lookback):
                logger.info("expired_listing_recently_locked", listing_id=listing_id)
                return Outcome.SKIPPED

            winner = self._resolve(listing_id, await store.get_actions(listing_id))

            if not await store.mark_expired(listing_id, winner, now):
                # Lost the race to another process or a user lock
                await db.rollback()
                logger.info("expired_listing_settled_elsewhere", listing_id=listing_id)
                return Outcome.SKIPPED
            await db.commit()

            if winner is not None:
                logger.info(
                    "listing_expired_with_winner",
                    listing_id=listing_id,
                    winner_id=winner.user_id,
                    action=winner.action.value,
                    amount=winner.amount,
                )
                await self._after_winner(db, store, listing, winner, now)
                return Outcome.SETTLED_WINNER

            logger.info("listing_expired_no_winner", listing_id=listing_id)
            await self._after_no_winner(db, store, listing, now)
            return Outcome.SETTLED_NO_WINNER

    def _resolve(self, listing_id: str, actions: list[ListingAction]) -> Winner | None:
        try:
            return resolve_winner(actions)
        except Exception:
            logger.exception("winner_resolution_failed", listing_id=listing_id)
            return None

    async def _after_winner(
        self,
        db: AsyncSession,
        store: ExpirationStore,
        listing: ListingSnapshot,
        winner: Winner,
        now: datetime,
    ) -> None:
        """Side effects of expire-with-winner; each step fails independently."""
        fanout = self._fanout(db)

        try:
            emission = await fanout.notify_winner(listing, winner, now=now)
            if emission.created and self._payment_timeout is not None:
                await self._payment_timeout.start_payment_timeout(
                    listing.id, winner.user_id, winner.action.value, winner.amount,
                )
        except Exception:
            logger.exception("winner_notification_failed", listing_id=listing.id, winner_id=winner.user_id)

        try:
            await fanout.notify_seller_winner(listing, winner, now=now)
        except Exception:
            logger.exception("seller_notification_failed", listing_id=listing.id, seller_id=listing.seller_id)

        try:
            recipients = losing_audience(
                winner.user_id,
                await store.get_participants(listing.id),
                await store.get_viewers(listing.id),
            )
            await fanout.notify_losers(listing, winner, recipients, now=now)
        except Exception:
            logger.exception("participant_notification_failed", listing_id=listing.id)

        await self._record(db, store, listing, winner, now)

    async def _after_no_winner(
        self,
        db: AsyncSession,
        store: ExpirationStore,
        listing: ListingSnapshot,
        now: datetime,
    ) -> None:
        fanout = self._fanout(db)

        try:
            await fanout.notify_seller_no_winner(listing, now=now)
        except Exception:
            logger.exception("seller_notification_failed", listing_id=listing.id, seller_id=listing.seller_id)

        try:
            recipients = no_winner_audience(await store.get_viewers(listing.id))
            await fanout.notify_viewers_no_winner(listing, recipients, now=now)
        except Exception:
            logger.exception("viewer_notification_failed", listing_id=listing.id)

        await self._record(db, store, listing, None, now)

    async def _record(
        self,
        db: AsyncSession,
        store: ExpirationStore,
        listing: ListingSnapshot,
        winner: Winner | None,
        now: datetime,
    ) -> None:
        try:
            await store.record_settlement(listing, winner, now)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("settlement_activity_failed", listing_id=listing.id)

    # ------------------------------------------------------------------
    # Payment reminders
    # ------------------------------------------------------------------

    async def check_payment_reminders(self, now: datetime | None = None) -> int:
        """Remind winners that have not paid long after expiry. Returns reminders sent."""
        now = now or self._clock()
        sent = 0
        async with self._session_factory() as db:
            store = ExpirationStore(db)
            listings = await store.list_unpaid_expired(expired_before=now - self.config.reminder_after)
            fanout = self._fanout(db)
            for listing in listings:
                try:
                    emission = await fanout.notify_payment_reminder(listing, now=now)
                except Exception:
                    logger.exception("payment_reminder_failed", listing_id=listing.id)
                    continue
                if emission.created:
                    sent += 1

        if sent:
            logger.info("payment_reminders_sent", count=sent)
        return sent
