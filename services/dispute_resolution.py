"""
Dispute Resolution Service
Nested state machine attached to a trade: in_review -> {escalated, resolved},
escalated -> resolved. Resolution moves escrow funds through the settlement
engine and takes the trade out of `disputed` in the same transaction.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    CLOSED_ESCROW_STATUSES,
    OPEN_DISPUTE_STATUSES,
    ActorRole,
    Dispute,
    DisputeOutcome,
    DisputeStatus,
    EscrowAccount,
    EscrowEventCause,
    TradeEventType,
    TradeStatus,
)
from services.escrow_settlement_engine import EscrowSettlementEngine, stored_sums
from services.notification_service import notification_service
from services.trade_lifecycle_service import ActorContext, TradeLifecycleService
from utils.atomic_transactions import lock_escrow, lock_trade
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import (
    DisputeAlreadyOpen,
    DisputeNotFound,
    EscrowNotFound,
    InvalidAmount,
    InvalidTransition,
    NothingToArbitrate,
    UnauthorizedActor,
    ValidationError,
)

logger = logging.getLogger(__name__)

ZERO = MonetaryDecimal.ZERO


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution operation"""

    dispute_id: int
    trade_id: int
    escrow_id: int
    outcome: str
    released_amount: Decimal
    refunded_amount: Decimal
    trade_status: str
    escrow_status: str

    def to_dict(self):
        data = self._asdict()
        data["released_amount"] = str(self.released_amount)
        data["refunded_amount"] = str(self.refunded_amount)
        return data


def _require_admin(actor: ActorContext, action: str) -> None:
    if actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
        raise UnauthorizedActor(
            f"Only an admin may {action}",
            details={"actor_id": actor.actor_id, "role": actor.role.value},
        )


class DisputeResolutionService:
    """Open, escalate and resolve disputes"""

    @classmethod
    def open_dispute(
        cls,
        session: Session,
        trade_id: int,
        raised_by: str,
        against: str,
        reason: str,
        actor: ActorContext,
    ) -> Dispute:
        """Open a dispute; fails if one is already open or nothing is left to arbitrate"""
        if not reason or not reason.strip():
            raise ValidationError("A dispute needs a reason")

        trade = lock_trade(session, trade_id)
        parties = {trade.buyer_id, trade.seller_id}
        if raised_by not in parties or against not in parties or raised_by == against:
            raise ValidationError(
                "Disputes are raised by one trade party against the other",
                details={"trade_id": trade_id, "raised_by": raised_by, "against": against},
            )
        if actor.role in (ActorRole.BUYER, ActorRole.SELLER) and actor.actor_id != raised_by:
            raise UnauthorizedActor(f"Actor {actor.actor_id} cannot raise a dispute on behalf of {raised_by}")

        existing = session.execute(
            select(Dispute.id).where(Dispute.trade_id == trade_id, Dispute.status.in_(OPEN_DISPUTE_STATUSES))
        ).first()
        if existing is not None:
            logger.warning(f"⚠️ DISPUTE_ALREADY_OPEN: trade={trade_id} dispute={existing.id}")
            raise DisputeAlreadyOpen(
                f"Trade {trade_id} already has an open dispute",
                details={"trade_id": trade_id, "dispute_id": existing.id},
            )

        try:
            account = lock_escrow(session, trade_id=trade_id)
        except EscrowNotFound:
            raise NothingToArbitrate(f"Trade {trade_id} has no escrow account to arbitrate")
        if account.status in CLOSED_ESCROW_STATUSES or stored_sums(account).held == ZERO:
            raise NothingToArbitrate(
                f"Escrow for trade {trade_id} is {account.status}; nothing left to arbitrate",
                details={"trade_id": trade_id, "escrow_status": account.status},
            )

        current = TradeStatus(trade.status)
        target = TradeLifecycleService._resolve_target(trade, current, TradeEventType.DISPUTE, actor)

        dispute = Dispute(
            trade_id=trade_id,
            raised_by=raised_by,
            against=against,
            reason=reason.strip(),
            status=DisputeStatus.IN_REVIEW.value,
            prior_trade_status=current.value,
        )
        session.add(dispute)
        try:
            session.flush()
        except IntegrityError:
            # Partial unique index: a concurrent request opened one first
            raise DisputeAlreadyOpen(f"Trade {trade_id} already has an open dispute", details={"trade_id": trade_id})

        TradeLifecycleService._record_transition(
            session, trade, current, target, TradeEventType.DISPUTE.value, actor, note=f"dispute {dispute.id}"
        )
        notification_service.emit(
            session, trade_id, "dispute.opened",
            {"dispute_id": dispute.id, "raised_by": raised_by, "against": against},
        )
        logger.info(
            f"⚖️ DISPUTE_OPENED: dispute={dispute.id} trade={trade_id} raised_by={raised_by} "
            f"against={against} escrow_frozen={account.id}"
        )
        return dispute

    @classmethod
    def escalate(cls, session: Session, dispute_id: int, actor: ActorContext, note: Optional[str] = None) -> Dispute:
        """Status-only move to the next review tier; no monetary effect"""
        _require_admin(actor, "escalate a dispute")
        dispute = cls._lock_dispute(session, dispute_id)
        if dispute.status != DisputeStatus.IN_REVIEW.value:
            raise InvalidTransition(
                f"Dispute {dispute_id} is {dispute.status}; only in_review disputes can be escalated",
                details={"dispute_id": dispute_id, "status": dispute.status},
            )

        dispute.status = DisputeStatus.ESCALATED.value
        dispute.escalated_at = datetime.now(timezone.utc)
        if note:
            dispute.resolution_note = note
        session.flush()

        notification_service.emit(session, dispute.trade_id, "dispute.escalated", {"dispute_id": dispute.id})
        logger.info(f"📈 DISPUTE_ESCALATED: dispute={dispute_id} trade={dispute.trade_id} by={actor.actor_id}")
        return dispute

    @classmethod
    def resolve(
        cls,
        session: Session,
        dispute_id: int,
        outcome: DisputeOutcome,
        note: Optional[str],
        actor: ActorContext,
        release_amount=None,
        refund_amount=None,
    ) -> ResolutionResult:
        """
        Resolve a dispute atomically:
        mark it resolved, release/refund per outcome, then move the trade to
        resolved and on to settled (nothing left held) or back to where it was.
        """
        _require_admin(actor, "resolve a dispute")
        dispute = cls._lock_dispute(session, dispute_id)
        if dispute.status not in OPEN_DISPUTE_STATUSES:
            raise InvalidTransition(
                f"Dispute {dispute_id} is already {dispute.status}",
                details={"dispute_id": dispute_id, "status": dispute.status},
            )

        trade = lock_trade(session, dispute.trade_id)
        account = lock_escrow(session, trade_id=trade.id)
        held = stored_sums(account).held
        if held == ZERO:
            raise NothingToArbitrate(f"Escrow {account.id} holds nothing to distribute")

        to_release, to_refund = cls._split_amounts(outcome, held, release_amount, refund_amount)

        dispute.status = DisputeStatus.RESOLVED.value
        dispute.outcome = outcome.value
        dispute.resolution_note = note
        dispute.resolved_by = actor.actor_id
        dispute.released_amount = to_release
        dispute.refunded_amount = to_refund
        dispute.resolved_at = datetime.now(timezone.utc)
        session.flush()

        reason = f"dispute {dispute.id} resolved: {outcome.value}"
        if to_release > ZERO:
            account = EscrowSettlementEngine.release(
                session, account.id, to_release, reason=reason,
                caused_by=EscrowEventCause.DISPUTE_RESOLUTION, actor_id=actor.actor_id,
            ).account
        if to_refund > ZERO:
            account = EscrowSettlementEngine.refund(
                session, account.id, to_refund, reason=reason,
                caused_by=EscrowEventCause.DISPUTE_RESOLUTION, actor_id=actor.actor_id,
            ).account

        cls._leave_disputed(session, trade, dispute, account, actor)

        notification_service.emit(
            session, trade.id, "dispute.resolved",
            {
                "dispute_id": dispute.id,
                "outcome": outcome.value,
                "released_amount": str(to_release),
                "refunded_amount": str(to_refund),
            },
        )
        logger.info(
            f"✅ DISPUTE_RESOLVED: dispute={dispute.id} trade={trade.id} outcome={outcome.value} "
            f"released={to_release} refunded={to_refund} trade_status={trade.status}"
        )
        return ResolutionResult(
            dispute_id=dispute.id,
            trade_id=trade.id,
            escrow_id=account.id,
            outcome=outcome.value,
            released_amount=to_release,
            refunded_amount=to_refund,
            trade_status=trade.status,
            escrow_status=account.status,
        )

    @classmethod
    def get_open_dispute(cls, session: Session, trade_id: int) -> Optional[Dispute]:
        return session.execute(
            select(Dispute).where(Dispute.trade_id == trade_id, Dispute.status.in_(OPEN_DISPUTE_STATUSES))
        ).scalar_one_or_none()

    @classmethod
    def _lock_dispute(cls, session: Session, dispute_id: int) -> Dispute:
        dispute = session.execute(
            select(Dispute)
            .where(Dispute.id == dispute_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if dispute is None:
            raise DisputeNotFound(f"Dispute {dispute_id} not found", details={"dispute_id": dispute_id})
        return dispute

    @classmethod
    def _split_amounts(cls, outcome: DisputeOutcome, held: Decimal, release_amount, refund_amount):
        if outcome == DisputeOutcome.FAVOR_SELLER:
            return held, ZERO
        if outcome == DisputeOutcome.FAVOR_BUYER:
            return ZERO, held

        if release_amount is None or refund_amount is None:
            raise InvalidAmount("A split resolution needs both a release and a refund amount")
        to_release = MonetaryDecimal.quantize(release_amount, "split release")
        to_refund = MonetaryDecimal.quantize(refund_amount, "split refund")
        if to_release < ZERO or to_refund < ZERO:
            raise InvalidAmount("Split amounts cannot be negative")
        if to_release + to_refund == ZERO:
            raise InvalidAmount("A split resolution must distribute some funds")
        if to_release + to_refund > held:
            raise InvalidAmount(
                f"Split of {to_release} + {to_refund} exceeds held funds {held}",
                details={"held": str(held), "release": str(to_release), "refund": str(to_refund)},
            )
        return to_release, to_refund

    @classmethod
    def _leave_disputed(
        cls, session: Session, trade, dispute: Dispute, account: EscrowAccount, actor: ActorContext
    ) -> None:
        current = TradeStatus(trade.status)
        resolved = TradeLifecycleService._resolve_target(trade, current, TradeEventType.RESOLVE_DISPUTE, actor)
        TradeLifecycleService._record_transition(
            session, trade, current, resolved, TradeEventType.RESOLVE_DISPUTE.value, actor,
            note=f"dispute {dispute.id}: {dispute.outcome}",
        )

        if stored_sums(account).held == ZERO:
            event, resume_to = TradeEventType.SETTLE, None
        else:
            event, resume_to = TradeEventType.RESUME, TradeStatus(dispute.prior_trade_status)

        target = TradeLifecycleService._resolve_target(trade, resolved, event, actor, resume_to=resume_to)
        TradeLifecycleService._record_transition(
            session, trade, resolved, target, event.value, actor, note=f"dispute {dispute.id}"
        )
