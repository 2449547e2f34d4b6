"""
Tests for the pure trade transition table and role guards
"""

import pytest

from models import ActorRole, TradeEventType, TradeStatus
from utils.trade_state_machine import (
    DISPUTABLE_STATES,
    TERMINAL_STATES,
    Rejected,
    apply_event,
    check_role,
    get_valid_events,
    is_terminal,
)


class TestApplyEvent:
    """(state, event) -> state | Rejected"""

    @pytest.mark.parametrize("state,event,expected", [
        (TradeStatus.RFQ_CREATED, TradeEventType.MATCH, TradeStatus.MATCHED),
        (TradeStatus.MATCHED, TradeEventType.QUOTE, TradeStatus.QUOTED),
        (TradeStatus.QUOTED, TradeEventType.CONTRACT, TradeStatus.CONTRACTED),
        (TradeStatus.CONTRACTED, TradeEventType.FUND_ESCROW, TradeStatus.ESCROW_FUNDED),
        (TradeStatus.ESCROW_FUNDED, TradeEventType.SHIP, TradeStatus.SHIPPED),
        (TradeStatus.SHIPPED, TradeEventType.DELIVER, TradeStatus.DELIVERED),
        (TradeStatus.DELIVERED, TradeEventType.SETTLE, TradeStatus.SETTLED),
        (TradeStatus.DISPUTED, TradeEventType.RESOLVE_DISPUTE, TradeStatus.RESOLVED),
        (TradeStatus.RESOLVED, TradeEventType.SETTLE, TradeStatus.SETTLED),
    ])
    def test_forward_edges(self, state, event, expected):
        assert apply_event(state, event) == expected

    @pytest.mark.parametrize("state", sorted(DISPUTABLE_STATES, key=lambda s: s.value))
    def test_dispute_from_in_flight_states(self, state):
        assert apply_event(state, TradeEventType.DISPUTE) == TradeStatus.DISPUTED

    def test_cannot_skip_ahead(self):
        """Test that only defined edges are legal"""
        result = apply_event(TradeStatus.RFQ_CREATED, TradeEventType.SHIP)
        assert isinstance(result, Rejected)
        assert "ship" in result.reason

    def test_cannot_go_backwards(self):
        assert isinstance(apply_event(TradeStatus.SHIPPED, TradeEventType.FUND_ESCROW), Rejected)

    def test_cannot_dispute_before_funding(self):
        assert isinstance(apply_event(TradeStatus.CONTRACTED, TradeEventType.DISPUTE), Rejected)

    @pytest.mark.parametrize("state", [s for s in TradeStatus if s not in TERMINAL_STATES])
    def test_cancel_from_every_non_terminal_state(self, state):
        assert apply_event(state, TradeEventType.CANCEL) == TradeStatus.CANCELLED

    @pytest.mark.parametrize("state", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_reject_everything(self, state):
        for event in TradeEventType:
            assert isinstance(apply_event(state, event), Rejected)

    def test_resume_returns_to_prior_in_flight_state(self):
        assert apply_event(
            TradeStatus.RESOLVED, TradeEventType.RESUME, resume_to=TradeStatus.SHIPPED
        ) == TradeStatus.SHIPPED

    def test_resume_requires_resolved(self):
        result = apply_event(TradeStatus.DISPUTED, TradeEventType.RESUME, resume_to=TradeStatus.SHIPPED)
        assert isinstance(result, Rejected)

    def test_resume_target_must_be_disputable(self):
        assert isinstance(
            apply_event(TradeStatus.RESOLVED, TradeEventType.RESUME, resume_to=TradeStatus.CONTRACTED),
            Rejected,
        )
        assert isinstance(apply_event(TradeStatus.RESOLVED, TradeEventType.RESUME), Rejected)


class TestRoleGuards:
    """Which roles may drive a trade into a state"""

    def test_seller_ships(self):
        assert check_role(TradeStatus.ESCROW_FUNDED, TradeStatus.SHIPPED, ActorRole.SELLER) is None

    def test_buyer_cannot_ship(self):
        rejection = check_role(TradeStatus.ESCROW_FUNDED, TradeStatus.SHIPPED, ActorRole.BUYER)
        assert isinstance(rejection, Rejected)

    def test_seller_cannot_settle(self):
        assert check_role(TradeStatus.DELIVERED, TradeStatus.SETTLED, ActorRole.SELLER) is not None

    def test_only_admin_resolves(self):
        assert check_role(TradeStatus.DISPUTED, TradeStatus.RESOLVED, ActorRole.BUYER) is not None
        assert check_role(TradeStatus.DISPUTED, TradeStatus.RESOLVED, ActorRole.ADMIN) is None

    def test_parties_cancel_before_funding(self):
        assert check_role(TradeStatus.QUOTED, TradeStatus.CANCELLED, ActorRole.SELLER) is None
        assert check_role(TradeStatus.CONTRACTED, TradeStatus.CANCELLED, ActorRole.BUYER) is None

    def test_only_admin_cancels_after_funding(self):
        rejection = check_role(TradeStatus.SHIPPED, TradeStatus.CANCELLED, ActorRole.BUYER)
        assert rejection is not None
        assert "admin" in rejection.reason
        assert check_role(TradeStatus.SHIPPED, TradeStatus.CANCELLED, ActorRole.ADMIN) is None

    def test_system_passes_every_guard(self):
        for target in TradeStatus:
            assert check_role(TradeStatus.DELIVERED, target, ActorRole.SYSTEM) is None


class TestValidEvents:

    def test_terminal(self):
        assert is_terminal(TradeStatus.SETTLED)
        assert not is_terminal(TradeStatus.DELIVERED)
        assert get_valid_events(TradeStatus.CANCELLED) == set()

    def test_delivered(self):
        assert get_valid_events(TradeStatus.DELIVERED) == {
            TradeEventType.SETTLE, TradeEventType.DISPUTE, TradeEventType.CANCEL
        }

    def test_resolved_can_resume(self):
        events = get_valid_events(TradeStatus.RESOLVED)
        assert TradeEventType.RESUME in events
        assert TradeEventType.SETTLE in events
