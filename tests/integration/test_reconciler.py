"""Integration tests for expiry settlement against a real store."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from conftest import NOW, iso
from msl.expiration.cache import ProcessedListingCache
from msl.expiration.reconciler import ExpirationReconciler, Outcome
from msl.expiration.store import EXPIRED_NO_WINNER_ACTION, EXPIRED_WINNER_ACTION
from msl.payments.timeout import expire_payment, open_payment

pytestmark = pytest.mark.asyncio


async def _auction_with_winner(seed) -> str:
    """Seller S, A mined for 1,000, B bid 1,500, V only viewed."""
    listing_id = await seed.listing("L1")
    await seed.action(listing_id, "A", "Mined", "Mined for ₱1,000", timestamp=NOW - timedelta(hours=3))
    await seed.action(listing_id, "B", "Bid", "Bid ₱1,500", timestamp=NOW - timedelta(hours=2))
    await seed.view(listing_id, "V")
    await seed.view(listing_id, "A")
    return listing_id


class TestExpireWithWinner:
    async def test_two_bidders_two_viewers(self, seed, reconciler):
        """A mines for 100, B bids 120, C and D only view: A wins, everyone else loses."""
        listing_id = await seed.listing("L")
        await seed.action(listing_id, "A", "Mined", "Mined for ₱100", timestamp=NOW - timedelta(hours=3))
        await seed.action(listing_id, "B", "Bid", "Bid ₱120", timestamp=NOW - timedelta(hours=2))
        await seed.view(listing_id, "C")
        await seed.view(listing_id, "D")

        await reconciler.sweep()

        listing = await seed.get_listing(listing_id)
        assert listing.status == "expired"
        assert listing.winner_id == "A"
        assert [(n.recipient_id, n.type) for n in await seed.notifications()] == [
            ("A", "payment_required"),
            ("B", "listing_expired_lost"),
            ("C", "listing_expired_lost"),
            ("D", "listing_expired_lost"),
            ("S", "winner_determined"),
        ]
        assert await seed.count_activity(listing_id, EXPIRED_WINNER_ACTION) == 1

    async def test_seller_who_viewed_is_told_they_lost(self, seed, reconciler):
        listing_id = await seed.listing("L1")
        await seed.action(listing_id, "A", "Mined", "Mined for ₱100")
        await seed.view(listing_id, "S")

        await reconciler.sweep()

        assert {(n.recipient_id, n.type) for n in await seed.notifications()} == {
            ("A", "payment_required"),
            ("S", "winner_determined"),
            ("S", "listing_expired_lost"),
        }

    async def test_verb_form_entries_are_not_actions(self, seed, reconciler):
        listing_id = await seed.listing("L1")
        await seed.action(listing_id, "X", "Mine", "Mine for ₱900")
        await seed.action(listing_id, "A", "Bid", "Bid ₱10")

        await reconciler.sweep()

        assert (await seed.get_listing(listing_id)).winner_id == "A"
        assert "X" not in {n.recipient_id for n in await seed.notifications()}

    async def test_full_settlement(self, seed, reconciler, payment_timeout):
        listing_id = await _auction_with_winner(seed)

        result = await reconciler.sweep()

        assert result.settled_winner == 1
        assert result.settled_ids == [listing_id]

        listing = await seed.get_listing(listing_id)
        assert listing.status == "expired"
        assert listing.winner_id == "A"
        assert listing.winner_action == "Mined"
        assert listing.winner_amount == 1000.0
        assert listing.expired_at is not None

        notifications = await seed.notifications()
        by_recipient = {n.recipient_id: n for n in notifications}
        assert len(notifications) == 4
        assert by_recipient["A"].type == "payment_required"
        assert by_recipient["A"].data["amount"] == 1000.0
        assert by_recipient["A"].data["sellerId"] == "S"
        assert by_recipient["S"].type == "winner_determined"
        assert by_recipient["S"].data["winnerId"] == "A"
        assert by_recipient["B"].type == "listing_expired_lost"
        assert by_recipient["V"].type == "listing_expired_lost"
        assert by_recipient["V"].data["winnerAction"] == "Mined"

        assert await seed.count_activity(listing_id, EXPIRED_WINNER_ACTION) == 1
        payment_timeout.start_payment_timeout.assert_awaited_once_with(listing_id, "A", "Mined", 1000.0)

    async def test_lock_action_wins_over_higher_amount(self, seed, reconciler):
        listing_id = await seed.listing("L1")
        await seed.action(listing_id, "A", "Stole", "Stole for ₱5,000")
        # Lock older than the lookback so it does not block settlement
        await seed.action(listing_id, "C", "Locked", "Locked for ₱50", timestamp=NOW - timedelta(hours=30))

        await reconciler.sweep()

        listing = await seed.get_listing(listing_id)
        assert listing.winner_id == "C"

    async def test_payment_timeout_failure_does_not_block_fanout(self, seed, session_factory):
        failing = AsyncMock()
        failing.start_payment_timeout = AsyncMock(side_effect=RuntimeError("queue down"))
        reconciler = ExpirationReconciler(session_factory, payment_timeout=failing, clock=lambda: NOW)
        listing_id = await _auction_with_winner(seed)

        result = await reconciler.sweep()

        assert result.settled_winner == 1
        assert len(await seed.notifications()) == 4
        assert await seed.count_activity(listing_id, EXPIRED_WINNER_ACTION) == 1


class TestExpireWithoutWinner:
    async def test_seller_and_viewers_notified(self, seed, reconciler, payment_timeout):
        listing_id = await seed.listing("L2")
        await seed.view(listing_id, "V")

        result = await reconciler.sweep()

        assert result.settled_no_winner == 1
        listing = await seed.get_listing(listing_id)
        assert listing.status == "expired"
        assert listing.winner_id is None

        notifications = await seed.notifications()
        assert [(n.recipient_id, n.type) for n in notifications] == [
            ("S", "no_winner"),
            ("V", "listing_expired_no_winner"),
        ]
        assert await seed.count_activity(listing_id, EXPIRED_NO_WINNER_ACTION) == 1
        payment_timeout.start_payment_timeout.assert_not_awaited()

    async def test_seller_who_viewed_also_gets_viewer_notice(self, seed, reconciler):
        listing_id = await seed.listing("L2")
        await seed.view(listing_id, "S")

        await reconciler.sweep()

        notifications = await seed.notifications()
        assert {(n.recipient_id, n.type) for n in notifications} == {
            ("S", "no_winner"),
            ("S", "listing_expired_no_winner"),
        }

    async def test_winner_without_name_is_no_winner(self, seed, reconciler):
        listing_id = await seed.listing("L3")
        await seed.action(listing_id, "A", "Mined", "₱100", user_name=None)

        result = await reconciler.sweep()

        assert result.settled_no_winner == 1
        assert (await seed.get_listing(listing_id)).winner_id is None


class TestIdempotence:
    async def test_repeated_sweeps_settle_once(self, seed, reconciler):
        listing_id = await _auction_with_winner(seed)

        await reconciler.sweep()
        second = await reconciler.sweep()

        assert second.settled == 0
        assert len(await seed.notifications()) == 4
        assert await seed.count_activity(listing_id, EXPIRED_WINNER_ACTION) == 1

    async def test_fresh_process_does_not_resettle(self, seed, reconciler, session_factory):
        listing_id = await _auction_with_winner(seed)
        await reconciler.sweep()

        restarted = ExpirationReconciler(session_factory, cache=ProcessedListingCache(), clock=lambda: NOW)
        assert await restarted.process_candidate(listing_id) is Outcome.SKIPPED
        assert len(await seed.notifications()) == 4

    async def test_settlement_entry_fences_active_listing(self, seed, reconciler):
        listing_id = await seed.listing("L1")
        await seed.action(listing_id, "A", EXPIRED_WINNER_ACTION, "already handled")

        assert await reconciler.process_candidate(listing_id) is Outcome.SKIPPED
        assert (await seed.get_listing(listing_id)).status == "active"
        assert await seed.notifications() == []

    async def test_stale_snapshot_of_sold_listing(self, seed, reconciler):
        listing_id = await seed.listing("L1", status="sold")
        assert await reconciler.process_candidate(listing_id) is Outcome.SKIPPED
        assert (await seed.get_listing(listing_id)).status == "sold"

    async def test_missing_listing(self, reconciler):
        assert await reconciler.process_candidate("nope") is Outcome.SKIPPED

    async def test_concurrent_sweeps_settle_once(self, seed, session_factory):
        listing_id = await _auction_with_winner(seed)
        first = ExpirationReconciler(session_factory, clock=lambda: NOW)
        second = ExpirationReconciler(session_factory, clock=lambda: NOW)

        results = await asyncio.gather(first.sweep(), second.sweep())

        assert sum(r.settled for r in results) == 1
        assert await seed.count_activity(listing_id, EXPIRED_WINNER_ACTION) == 1
        assert len(await seed.notifications(type="payment_required")) == 1


class TestExclusions:
    async def test_locked_listing_untouched(self, seed, reconciler):
        listing_id = await seed.listing("L1", locked_by="A")
        await seed.action(listing_id, "A", "Mined", "₱100")

        result = await reconciler.sweep()

        assert result.candidates == 0
        listing = await seed.get_listing(listing_id)
        assert listing.status == "active"
        assert await seed.notifications() == []

    async def test_recent_lock_action_blocks_settlement(self, seed, reconciler):
        listing_id = await seed.listing("L1")
        await seed.action(listing_id, "A", "Locked", "Locked for ₱300", timestamp=NOW - timedelta(hours=1))

        result = await reconciler.sweep()

        assert result.skipped == 1
        assert (await seed.get_listing(listing_id)).status == "active"
        assert await seed.notifications() == []

    async def test_outside_catchup_window_untouched(self, seed, reconciler):
        listing_id = await seed.listing("L1", expires_at=iso(NOW - timedelta(hours=25)))

        result = await reconciler.sweep()

        assert result.abandoned == 1
        assert (await seed.get_listing(listing_id)).status == "active"

    async def test_future_listing_untouched(self, seed, reconciler):
        listing_id = await seed.listing("L1", expires_at=iso(NOW + timedelta(minutes=10)))
        result = await reconciler.sweep()
        assert result.candidates == 0
        assert (await seed.get_listing(listing_id)).status == "active"

    async def test_unparseable_expiry_counted(self, seed, reconciler):
        await seed.listing("L1", expires_at="whenever")
        await seed.listing("L2")
        result = await reconciler.sweep()
        assert result.unparseable == 1
        assert result.settled == 1


class TestPaymentReminders:
    async def test_reminder_sent_once(self, seed, reconciler):
        listing_id = await seed.listing(
            "L1",
            status="expired",
            winner_id="A",
            winner_name="User A",
            winner_action="Mined",
            winner_amount=1000.0,
            expired_at=NOW - timedelta(hours=25),
        )

        assert await reconciler.check_payment_reminders() == 1
        assert await reconciler.check_payment_reminders() == 0

        reminders = await seed.notifications(type="payment_reminder")
        assert [n.recipient_id for n in reminders] == ["A"]
        assert reminders[0].data["listingId"] == listing_id

    async def test_paid_or_recent_listing_not_reminded(self, seed, reconciler):
        await seed.listing("L1", status="expired", winner_id="A", winner_name="A",
                           expired_at=NOW - timedelta(hours=30), payment_submitted=True)
        await seed.listing("L2", status="expired", winner_id="B", winner_name="B",
                           expired_at=NOW - timedelta(hours=2))
        assert await reconciler.check_payment_reminders() == 0

    async def test_timed_out_payment_not_reminded(self, seed, session_factory, reconciler):
        await seed.listing("L1", status="expired", winner_id="A", winner_name="User A",
                           expired_at=NOW - timedelta(hours=25))
        async with session_factory() as db:
            payment = await open_payment(db, "L1", "A", "Mined", 100.0, timedelta(minutes=3),
                                         now=NOW - timedelta(hours=25))
            assert await expire_payment(db, payment.id, now=NOW - timedelta(hours=24)) is True
            await db.commit()

        assert await reconciler.check_payment_reminders() == 0
        assert await seed.notifications(type="payment_reminder") == []

    async def test_pending_payment_still_reminded(self, seed, session_factory, reconciler):
        await seed.listing("L1", status="expired", winner_id="A", winner_name="User A",
                           expired_at=NOW - timedelta(hours=25))
        async with session_factory() as db:
            await open_payment(db, "L1", "A", "Mined", 100.0, timedelta(days=7), now=NOW - timedelta(hours=25))
            await db.commit()

        assert await reconciler.check_payment_reminders() == 1


class TestRunPass:
    async def test_sweep_summary_reports_cache(self, seed, reconciler):
        listing_id = await seed.listing("L1")
        await seed.action(listing_id, "A", "Locked", "Locked for ₱300")
        await reconciler.sweep()

        with capture_logs() as logs:
            await reconciler.sweep()

        [summary] = [entry for entry in logs if entry["event"] == "expiration_sweep_complete"]
        assert summary["cache_tracked"] == 1
        assert summary["cache_hits"] == 1

    async def test_run_pass_never_raises(self):
        def broken_factory():
            raise RuntimeError("no store")

        reconciler = ExpirationReconciler(broken_factory, clock=lambda: NOW)  # type: ignore[arg-type]
        result = await reconciler.run_pass()
        assert result.sweep is None
        assert result.reminders_sent == 0

    async def test_run_pass_sweeps_and_reminds(self, seed, reconciler):
        await _auction_with_winner(seed)
        result = await reconciler.run_pass()
        assert result.sweep.settled_winner == 1
        assert result.reminders_sent == 0
