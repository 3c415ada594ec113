"""Deterministic winner resolution for expired listings.

ZERO hidden state. Actions are ranked by kind priority
(Lock > Steal > Mine > Bid), then by amount descending. Remaining ties are
broken by earliest timestamp, then by actor id, so the result does not
depend on the order the store returned the actions in.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class ActionKind(str, Enum):
    """Action kinds, valued by the label written to the activity log."""

    LOCK = "Locked"
    STEAL = "Stole"
    MINE = "Mined"
    BID = "Bid"

    @property
    def priority(self) -> int:
        return ACTION_PRIORITY[self]

    @classmethod
    def from_label(cls, label: str | None) -> ActionKind | None:
        """Exact activity-log label (``Mined``, ``Locked`` ...), else None."""
        if not label:
            return None
        try:
            return cls(label)
        except ValueError:
            return None


# Lower number wins
ACTION_PRIORITY: dict[ActionKind, int] = {
    ActionKind.LOCK: 1,
    ActionKind.STEAL: 2,
    ActionKind.MINE: 3,
    ActionKind.BID: 4,
}

ACTION_LABELS: tuple[str, ...] = tuple(kind.value for kind in ActionKind)

_AMOUNT_RE = re.compile(r"(?:₱|PHP|\$)\s*(\d[\d,]*(?:\.\d+)?)", re.IGNORECASE)
_FAR_FUTURE = datetime(9999, 12, 31, tzinfo=timezone.utc)


def parse_amount(details: str | None) -> float:
    """Extract the currency-prefixed amount from an action's details.

    ``"Mined for ₱1,250"`` -> 1250.0. Unparseable details yield 0.0.
    """
    if not details:
        return 0.0
    match = _AMOUNT_RE.search(details)
    if match is None:
        return 0.0
    try:
        return float(match.group(1).replace(",", ""))
    except ValueError:
        return 0.0


@dataclass(frozen=True)
class ListingAction:
    """One entry of a listing's action log."""

    user_id: str | None
    user_name: str | None
    action: str
    details: str | None = None
    timestamp: datetime | None = None

    @property
    def kind(self) -> ActionKind | None:
        return ActionKind.from_label(self.action)

    @property
    def amount(self) -> float:
        return parse_amount(self.details)


@dataclass(frozen=True)
class Winner:
    user_id: str
    user_name: str
    action: ActionKind
    amount: float
    details: str | None = None


def _sort_key(action: ListingAction) -> tuple[int, float, datetime, str]:
    kind = action.kind
    ts = action.timestamp
    if ts is not None and ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (
        kind.priority if kind is not None else 999,
        -action.amount,
        ts or _FAR_FUTURE,
        action.user_id or "",
    )


def rank_actions(actions: Iterable[ListingAction]) -> list[ListingAction]:
    """Return the recognised actions in winning order (best first)."""
    return sorted((a for a in actions if a.kind is not None), key=_sort_key)


def resolve_winner(actions: Iterable[ListingAction]) -> Winner | None:
    """Pick the winning action, or None when there is no valid winner.

    A top-ranked action without an actor id or name indicates corrupt
    upstream data and resolves to no winner.
    """
    ranked = rank_actions(actions)
    if not ranked:
        return None

    best = ranked[0]
    if not best.user_id or not best.user_name:
        return None

    return Winner(
        user_id=best.user_id,
        user_name=best.user_name,
        action=best.kind,  # type: ignore[arg-type]
        amount=best.amount,
        details=best.details,
    )
