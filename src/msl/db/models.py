"""ORM models for the marketplace documents the expiration engine touches.

Identifiers are opaque strings (they originate from the mobile clients'
auth provider), so every foreign reference is a plain String column.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from msl.db.base import Base, IdType, JSONType


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


class Listing(Base):
    """A single auction/sale item with a countdown expiry."""

    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(128), nullable=False)
    seller_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)

    # Raw expiry as written by the clients: ISO string, epoch number or
    # {"seconds": ..., "nanoseconds": ...} wrapper.
    end_date_time: Mapped[Any] = mapped_column(JSONType, nullable=True)

    # Price tiers
    mine_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    steal_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    lock_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    # Set only by an explicit user lock action
    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Set on settlement
    winner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    winner_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    winner_action: Mapped[str | None] = mapped_column(String(16), nullable=True)
    winner_amount: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Activity log (user actions + system entries)
# ---------------------------------------------------------------------------


class ActivityLog(Base):
    """Append-only listing activity.

    User actions carry one of the action labels ``Mined``, ``Stole``,
    ``Locked`` or ``Bid``; system entries (``system_generated``) record
    settlements such as ``Listing Expired - Winner``.
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("ix_activity_logs_listing_action", "listing_id", "action"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    system_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ListingView(Base):
    """A user having viewed a listing."""

    __tablename__ = "listing_views"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    viewer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """Persisted user notifications."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_type", "recipient_id", "type"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    recipient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False, default="general")
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class Payment(Base):
    """Payment owed by the winner of an expired listing."""

    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_listing_buyer", "listing_id", "buyer_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    seller_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    action_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    amount: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending_payment")
    expiration_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
