"""
Escrow Settlement Engine tests
Ledger sums, status derivation, commission, freezes and the audit fold
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from models import (
    Dispute,
    DisputeStatus,
    EscrowEvent,
    EscrowEventCause,
    EscrowStatus,
    PlatformRevenue,
    TradeStatus,
)
from services.escrow_settlement_engine import (
    EscrowSettlementEngine,
    LedgerSums,
    derive_status,
    fold_events,
)
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import (
    EscrowAlreadyClosed,
    EscrowFrozen,
    EventNotYetApplicable,
    InsufficientHeldFunds,
    InvalidAmount,
    ValidationError,
)

D = Decimal


def _assert_invariant(account):
    assert account.held_amount + account.released_amount + account.refunded_amount == account.total_amount


def _events(session, escrow_id):
    return session.execute(
        select(EscrowEvent).where(EscrowEvent.escrow_id == escrow_id).order_by(EscrowEvent.id)
    ).scalars().all()


@pytest.mark.escrow
class TestHoldAndRelease:
    """Hold then release the full amount"""

    def test_hold_full_amount_marks_held(self, db_session, create_trade):
        trade = create_trade(amount="1000")
        account = trade.escrow_account
        assert account.status == EscrowStatus.REQUIRED.value

        with atomic_transaction(db_session):
            result = EscrowSettlementEngine.hold(db_session, account.id, "1000", external_ref="ch_1")

        assert result.account.status == EscrowStatus.HELD.value
        assert result.account.held_amount == D("1000")
        assert result.account.total_amount == D("1000")
        assert result.event.event_type == "hold"
        assert result.event.external_ref == "ch_1"
        _assert_invariant(result.account)

    def test_full_release_closes_account(self, db_session, funded_trade, as_money):
        account = funded_trade.escrow_account

        with atomic_transaction(db_session):
            result = EscrowSettlementEngine.release(db_session, account.id, "1000", reason="delivered")

        assert result.account.status == EscrowStatus.RELEASED.value
        assert result.account.held_amount == D("0")
        assert result.account.released_amount == D("1000")
        assert result.account.closed_at is not None
        assert result.event.event_type == "release"
        _assert_invariant(result.account)

    def test_refund_after_full_release_rejected(self, db_session, funded_trade):
        account = funded_trade.escrow_account
        with atomic_transaction(db_session):
            EscrowSettlementEngine.release(db_session, account.id, "1000")

        with pytest.raises(EscrowAlreadyClosed):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.refund(db_session, account.id, "400")

        assert len(_events(db_session, account.id)) == 2

    def test_partial_release(self, db_session, funded_trade):
        account = funded_trade.escrow_account
        with atomic_transaction(db_session):
            result = EscrowSettlementEngine.release(db_session, account.id, "250")

        assert result.event.event_type == "partial_release"
        assert result.account.status == EscrowStatus.PARTIALLY_RELEASED.value
        assert result.account.held_amount == D("750")
        assert result.account.closed_at is None
        _assert_invariant(result.account)

    def test_partial_refund_then_release_remaining(self, db_session, funded_trade):
        account = funded_trade.escrow_account
        with atomic_transaction(db_session):
            EscrowSettlementEngine.refund(db_session, account.id, "300")
        with atomic_transaction(db_session):
            result = EscrowSettlementEngine.release(db_session, account.id, "700")

        assert result.account.refunded_amount == D("300")
        assert result.account.released_amount == D("700")
        assert result.account.status == EscrowStatus.RELEASED.value
        _assert_invariant(result.account)


@pytest.mark.escrow
class TestHoldValidation:

    def test_partial_hold_is_pending(self, db_session, create_trade):
        trade = create_trade(amount="1000")
        with atomic_transaction(db_session):
            result = EscrowSettlementEngine.hold(db_session, trade.escrow_account.id, "400")
        assert result.account.status == EscrowStatus.PENDING.value

        with atomic_transaction(db_session):
            result = EscrowSettlementEngine.hold(db_session, trade.escrow_account.id, "600")
        assert result.account.status == EscrowStatus.HELD.value
        assert result.account.total_amount == D("1000")

    def test_hold_cannot_exceed_required(self, db_session, create_trade):
        trade = create_trade(amount="1000")
        with pytest.raises(InvalidAmount):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.hold(db_session, trade.escrow_account.id, "1000.00000001")

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", None, "NaN"])
    def test_invalid_amounts(self, db_session, create_trade, amount):
        trade = create_trade()
        with pytest.raises(InvalidAmount):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.hold(db_session, trade.escrow_account.id, amount)
        assert _events(db_session, trade.escrow_account.id) == []

    def test_currency_mismatch(self, db_session, create_trade):
        trade = create_trade(currency="USD")
        with pytest.raises(InvalidAmount):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.hold(db_session, trade.escrow_account.id, "10", currency="EUR")

    def test_non_string_currency(self, db_session, create_trade):
        trade = create_trade(currency="USD")
        with pytest.raises(ValidationError) as exc_info:
            with atomic_transaction(db_session):
                EscrowSettlementEngine.hold(db_session, trade.escrow_account.id, "10", currency=840)
        assert exc_info.value.code == "validation_error"
        assert _events(db_session, trade.escrow_account.id) == []

    def test_hold_after_release_started_rejected(self, db_session, funded_trade):
        account = funded_trade.escrow_account
        with atomic_transaction(db_session):
            EscrowSettlementEngine.release(db_session, account.id, "100")
        with pytest.raises(InvalidAmount):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.hold(db_session, account.id, "100")


@pytest.mark.escrow
class TestPayoutValidation:

    def test_release_more_than_held(self, db_session, funded_trade):
        account = funded_trade.escrow_account
        with pytest.raises(InsufficientHeldFunds):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.release(db_session, account.id, "1000.01")

        db_session.refresh(account)
        assert account.held_amount == D("1000")
        assert len(_events(db_session, account.id)) == 1

    def test_release_before_any_hold_is_not_yet_applicable(self, db_session, create_trade):
        trade = create_trade()
        with pytest.raises(EventNotYetApplicable) as exc_info:
            with atomic_transaction(db_session):
                EscrowSettlementEngine.release(db_session, trade.escrow_account.id, "100")
        assert exc_info.value.retryable is True

    def test_refund_before_any_hold_is_not_yet_applicable(self, db_session, create_trade):
        trade = create_trade()
        with pytest.raises(EventNotYetApplicable):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.refund(db_session, trade.escrow_account.id, "100")

    def test_close_unfunded(self, db_session, create_trade):
        trade = create_trade()
        with atomic_transaction(db_session):
            account = EscrowSettlementEngine.close_unfunded(db_session, trade.escrow_account.id)
        assert account.status == EscrowStatus.CANCELLED.value

        with pytest.raises(EscrowAlreadyClosed):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.hold(db_session, account.id, "10")

    def test_close_unfunded_refuses_funded_account(self, db_session, funded_trade):
        with pytest.raises(InvalidAmount):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.close_unfunded(db_session, funded_trade.escrow_account.id)


@pytest.mark.escrow
class TestDisputeFreeze:

    @pytest.fixture
    def open_dispute(self, db_session, funded_trade):
        with atomic_transaction(db_session):
            db_session.add(Dispute(
                trade_id=funded_trade.id,
                raised_by=funded_trade.buyer_id,
                against=funded_trade.seller_id,
                reason="goods damaged",
                status=DisputeStatus.IN_REVIEW.value,
                prior_trade_status=TradeStatus.ESCROW_FUNDED.value,
            ))
        return funded_trade

    @pytest.mark.parametrize("cause", [
        EscrowEventCause.WEBHOOK, EscrowEventCause.ADMIN, EscrowEventCause.TRADE_TRANSITION,
    ])
    def test_non_dispute_mutations_frozen(self, db_session, open_dispute, cause):
        with pytest.raises(EscrowFrozen):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.release(db_session, open_dispute.escrow_account.id, "100", caused_by=cause)

    def test_dispute_resolution_may_move_funds(self, db_session, open_dispute):
        with atomic_transaction(db_session):
            result = EscrowSettlementEngine.refund(
                db_session, open_dispute.escrow_account.id, "100",
                caused_by=EscrowEventCause.DISPUTE_RESOLUTION, actor_id="admin-1",
            )
        assert result.event.caused_by == "dispute_resolution"
        assert result.account.held_amount == D("900")


@pytest.mark.escrow
class TestCommission:

    def test_commission_recorded_on_release(self, db_session, funded_trade):
        account = funded_trade.escrow_account
        with atomic_transaction(db_session):
            result = EscrowSettlementEngine.release(db_session, account.id, "1000")

        assert result.commission == D("80.00000000")
        revenue = db_session.execute(select(PlatformRevenue)).scalars().all()
        assert len(revenue) == 1
        assert revenue[0].escrow_event_id == result.event.id
        assert revenue[0].fee_amount == D("80")
        # gross amounts stay on the ledger
        assert result.account.released_amount == D("1000")

    def test_no_commission_on_refund(self, db_session, funded_trade):
        with atomic_transaction(db_session):
            result = EscrowSettlementEngine.refund(db_session, funded_trade.escrow_account.id, "1000")
        assert result.commission is None
        assert db_session.execute(select(PlatformRevenue)).scalars().all() == []


@pytest.mark.escrow
class TestFoldAndAudit:

    def test_derive_status(self):
        required = D("1000")
        assert derive_status(required, LedgerSums(D(0), D(0), D(0), D(0))) == EscrowStatus.REQUIRED
        assert derive_status(required, LedgerSums(D(0), D(0), D(0), D(0)), closed=True) == EscrowStatus.CANCELLED
        assert derive_status(required, LedgerSums(D(500), D(500), D(0), D(0))) == EscrowStatus.PENDING
        assert derive_status(required, LedgerSums(D(1000), D(1000), D(0), D(0))) == EscrowStatus.HELD
        assert derive_status(required, LedgerSums(D(1000), D(400), D(600), D(0))) == EscrowStatus.PARTIALLY_RELEASED
        assert derive_status(required, LedgerSums(D(1000), D(0), D(0), D(1000))) == EscrowStatus.REFUNDED
        assert derive_status(required, LedgerSums(D(1000), D(0), D(600), D(400))) == EscrowStatus.RELEASED

    def test_stored_sums_match_fold(self, db_session, funded_trade):
        account = funded_trade.escrow_account
        with atomic_transaction(db_session):
            EscrowSettlementEngine.release(db_session, account.id, "600")
        with atomic_transaction(db_session):
            EscrowSettlementEngine.refund(db_session, account.id, "400")

        folded = fold_events(_events(db_session, account.id))
        assert folded == LedgerSums(D("1000"), D("0"), D("600"), D("400"))

        report = EscrowSettlementEngine.audit_account(db_session, account.id)
        assert report.consistent is True
        assert report.event_count == 3
        assert report.to_dict()["derived_status"] == "released"

    def test_audit_reports_tampering_without_correcting(self, db_session, funded_trade):
        account = funded_trade.escrow_account
        account.held_amount = D("900")
        db_session.commit()

        report = EscrowSettlementEngine.audit_account(db_session, account.id)
        assert report.consistent is False
        assert any(m.startswith("held") for m in report.mismatches)

        db_session.refresh(account)
        assert account.held_amount == D("900")

    def test_notifications_follow_commit(self, db_session, funded_trade, notifications):
        sent_before = len(notifications.sent)
        with pytest.raises(InsufficientHeldFunds):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.release(db_session, funded_trade.escrow_account.id, "10")
                EscrowSettlementEngine.release(db_session, funded_trade.escrow_account.id, "5000")
        assert len(notifications.sent) == sent_before

        with atomic_transaction(db_session):
            EscrowSettlementEngine.release(db_session, funded_trade.escrow_account.id, "10")
        assert notifications.event_types(funded_trade.id)[-1] == "escrow.partial_release"
