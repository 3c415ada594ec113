"""Notification creation and lookup.

Notifications are:
1. Persisted in the database
2. Pushed to the recipient via Redis pub/sub (``ws:user:{recipient}``)

Types used by the expiration engine: payment_required, winner_determined,
listing_expired_lost, no_winner, listing_expired_no_winner, payment_reminder
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from msl.db.models import Notification
from msl.listings.expiry import ensure_utc

logger = logging.getLogger(__name__)


async def create_notification(
    db: AsyncSession,
    recipient_id: str,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    redis: Any | None = None,
    now: datetime | None = None,
) -> Notification:
    """Create a notification and push it to the recipient's channel."""
    payload = dict(data or {})
    notification = Notification(
        recipient_id=recipient_id,
        type=payload.get("type", "general"),
        title=title,
        body=body,
        data=payload,
        read=False,
        created_at=now or datetime.now(timezone.utc),
    )
    db.add(notification)
    await db.flush()

    if redis is not None:
        ws_payload = {
            "event": "notification",
            "data": {
                "id": notification.id,
                "type": notification.type,
                "title": notification.title,
                "body": notification.body,
                "data": payload,
                "timestamp": notification.created_at.isoformat() if notification.created_at else None,
                "read": False,
            },
        }
        try:
            await redis.publish(f"ws:user:{recipient_id}", json.dumps(ws_payload))
        except Exception:
            logger.warning("Failed to push notification via Redis", exc_info=True)

    return notification


async def find_recent_notification(
    db: AsyncSession,
    recipient_id: str,
    type_: str,
    listing_id: str,
    window: timedelta,
    now: datetime | None = None,
) -> Notification | None:
    """Find a notification for (recipient, type, listing) created inside ``window``.

    The store is queried by recipient and type; listing id and creation time
    are matched here. A record with no creation time yet counts as recent.
    """
    cutoff = (now or datetime.now(timezone.utc)) - window
    result = await db.execute(
        select(Notification).where(
            Notification.recipient_id == recipient_id,
            Notification.type == type_,
        )
    )
    for notification in result.scalars().all():
        if (notification.data or {}).get("listingId") != listing_id:
            continue
        if notification.created_at is None or ensure_utc(notification.created_at) >= cutoff:
            return notification
    return None

