"""Unit tests for the listing status state machine."""

from __future__ import annotations

import pytest

from msl.listings.state import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    ListingStatus,
    parse_status,
    transition,
)


class TestListingStateMachine:
    def test_valid_transitions_structure(self):
        assert set(VALID_TRANSITIONS) == set(ListingStatus)

    @pytest.mark.parametrize("target", ["expired", "locked", "sold"])
    def test_active_exits(self, target):
        assert transition("active", target) is ListingStatus(target)

    @pytest.mark.parametrize("status", ["expired", "locked", "sold"])
    def test_terminal_states(self, status):
        assert not VALID_TRANSITIONS[ListingStatus(status)]

    @pytest.mark.parametrize(
        ("current", "target"),
        [("expired", "active"), ("sold", "expired"), ("locked", "expired"), ("expired", "expired")],
    )
    def test_invalid_transition_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError, match="Invalid transition"):
            transition(current, target)

    def test_self_transition_rejected(self):
        with pytest.raises(InvalidTransitionError):
            transition("active", "active")

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError):
            transition("archived", "expired")

    def test_parse_status(self):
        assert parse_status("active") is ListingStatus.ACTIVE
        assert parse_status(ListingStatus.SOLD) is ListingStatus.SOLD
