"""Listing state machine.

State progression: active -> {expired, locked, sold}
Every state other than ``active`` is terminal; a listing never returns to
``active`` and is never settled twice.
"""

from __future__ import annotations

from enum import Enum


class ListingStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    LOCKED = "locked"
    SOLD = "sold"


VALID_TRANSITIONS: dict[ListingStatus, frozenset[ListingStatus]] = {
    ListingStatus.ACTIVE: frozenset({ListingStatus.EXPIRED, ListingStatus.LOCKED, ListingStatus.SOLD}),
    ListingStatus.EXPIRED: frozenset(),
    ListingStatus.LOCKED: frozenset(),
    ListingStatus.SOLD: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised when a listing is asked to move along an edge that does not exist."""

    def __init__(self, current: ListingStatus | str, target: ListingStatus | str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition: {_label(current)} -> {_label(target)}")


def _label(status: ListingStatus | str) -> str:
    return status.value if isinstance(status, ListingStatus) else str(status)


def parse_status(value: str | ListingStatus) -> ListingStatus:
    """Coerce a stored status string. Raises ValueError for unknown values."""
    if isinstance(value, ListingStatus):
        return value
    return ListingStatus(value.strip().lower())


def transition(current: ListingStatus | str, target: ListingStatus | str) -> ListingStatus:
    """Validate ``current -> target`` and return the new status.

    Raises InvalidTransitionError for any edge not in VALID_TRANSITIONS,
    including self-transitions such as ``expired -> expired``.
    """
    try:
        current_status = parse_status(current)
        target_status = parse_status(target)
    except ValueError as exc:
        raise InvalidTransitionError(current, target) from exc

    if target_status not in VALID_TRANSITIONS[current_status]:
        raise InvalidTransitionError(current_status, target_status)
    return target_status
