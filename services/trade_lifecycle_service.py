"""
Trade Lifecycle Service
Executes trade state machine transitions against the ledger store.

Transitions that move money (contracted -> escrow_funded, -> settled, and any
cancellation after funding) run in the same transaction as the escrow event
they depend on; the caller's atomic_transaction commits both or neither.
"""

import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import (
    ActorRole,
    EscrowAccount,
    EscrowEventCause,
    EscrowStatus,
    Trade,
    TradeEventType,
    TradeStatus,
    TradeStatusHistory,
)
from services.escrow_settlement_engine import (
    EscrowSettlementEngine,
    has_open_dispute,
    is_fully_funded,
    stored_sums,
)
from services.notification_service import notification_service
from utils.atomic_transactions import lock_trade
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import (
    ConcurrentModificationConflict,
    EscrowFrozen,
    InvalidAmount,
    InvalidTransition,
    TradeNotFound,
    UnauthorizedActor,
    ValidationError,
)
from utils.optimistic_locking import versioned_update
from utils.trade_state_machine import Rejected, apply_event, check_role

logger = logging.getLogger(__name__)

# Events owned by the dispute resolver; not accepted through the generic transition path
DISPUTE_EVENTS = (TradeEventType.DISPUTE, TradeEventType.RESOLVE_DISPUTE, TradeEventType.RESUME)
CREATE_EVENT = "create"


@dataclass(frozen=True)
class ActorContext:
    actor_id: Optional[str]
    role: ActorRole

    @classmethod
    def system(cls, actor_id: str = "system") -> "ActorContext":
        return cls(actor_id=actor_id, role=ActorRole.SYSTEM)


class TransitionDecision(NamedTuple):
    allowed: bool
    current_status: str
    next_status: Optional[str]
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self._asdict()


@dataclass
class TradeSnapshot:
    id: int
    buyer_id: str
    seller_id: str
    status: str
    currency: str
    agreed_amount: Decimal
    version: int
    metadata: Dict[str, Any]
    escrow: Optional[Dict[str, Any]]

    @classmethod
    def from_trade(cls, trade: Trade, escrow: Optional[EscrowAccount]) -> "TradeSnapshot":
        escrow_view = None
        if escrow is not None:
            escrow_view = {
                "id": escrow.id,
                "status": escrow.status,
                "currency": escrow.currency,
                "required_amount": str(MonetaryDecimal.quantize(escrow.required_amount)),
                "total_amount": str(MonetaryDecimal.quantize(escrow.total_amount)),
                "held_amount": str(MonetaryDecimal.quantize(escrow.held_amount)),
                "released_amount": str(MonetaryDecimal.quantize(escrow.released_amount)),
                "refunded_amount": str(MonetaryDecimal.quantize(escrow.refunded_amount)),
                "version": escrow.version,
            }
        return cls(
            id=trade.id,
            buyer_id=trade.buyer_id,
            seller_id=trade.seller_id,
            status=trade.status,
            currency=trade.currency,
            agreed_amount=MonetaryDecimal.quantize(trade.agreed_amount),
            version=trade.version,
            metadata=dict(trade.trade_metadata or {}),
            escrow=escrow_view,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "status": self.status,
            "currency": self.currency,
            "agreed_amount": str(self.agreed_amount),
            "version": self.version,
            "metadata": self.metadata,
            "escrow": self.escrow,
        }


def _find_escrow(session: Session, trade_id: int) -> Optional[EscrowAccount]:
    return session.execute(
        select(EscrowAccount)
        .where(EscrowAccount.trade_id == trade_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _audit_hash(previous_hash: Optional[str], trade_id: int, from_status: Optional[str], to_status: str,
                event: str, actor: ActorContext, version: int) -> str:
    material = "|".join([
        previous_hash or "genesis",
        str(trade_id),
        from_status or "",
        to_status,
        event,
        actor.actor_id or "",
        actor.role.value,
        str(version),
    ])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class TradeLifecycleService:
    """Trade creation, transitions, previews and snapshots"""

    @classmethod
    def create_trade(
        cls,
        session: Session,
        buyer_id: str,
        seller_id: str,
        currency: str,
        agreed_amount,
        metadata: Optional[Dict[str, Any]] = None,
        direct_checkout: bool = False,
        actor: Optional[ActorContext] = None,
    ) -> Trade:
        """Create a trade from an accepted RFQ (rfq_created) or a direct checkout (contracted)"""
        if not buyer_id or not seller_id:
            raise ValidationError("buyer_id and seller_id are required")
        if buyer_id == seller_id:
            raise ValidationError("buyer and seller must be different parties")
        if not currency or len(currency) > 10:
            raise InvalidAmount(f"Invalid currency {currency!r}")

        amount = MonetaryDecimal.positive(agreed_amount, "agreed amount")
        actor = actor or ActorContext(actor_id=buyer_id, role=ActorRole.BUYER)
        status = TradeStatus.CONTRACTED if direct_checkout else TradeStatus.RFQ_CREATED

        trade = Trade(
            buyer_id=buyer_id,
            seller_id=seller_id,
            status=status.value,
            currency=currency.upper(),
            agreed_amount=amount,
            trade_metadata=metadata or {},
            version=1,
        )
        session.add(trade)
        session.flush()

        cls._append_history(session, trade, None, status, CREATE_EVENT, actor, note="direct checkout" if direct_checkout else None)
        if status == TradeStatus.CONTRACTED:
            EscrowSettlementEngine.open_account(session, trade)

        notification_service.emit(session, trade.id, "trade.created", {"status": status.value})
        logger.info(
            f"🆕 TRADE_CREATED: trade={trade.id} buyer={buyer_id} seller={seller_id} "
            f"amount={amount} {trade.currency} status={status.value}"
        )
        return trade

    @classmethod
    def transition(
        cls,
        session: Session,
        trade_id: int,
        event: TradeEventType,
        actor: ActorContext,
        expected_version: Optional[int] = None,
        note: Optional[str] = None,
    ) -> TradeSnapshot:
        """
        Validate and execute one lifecycle event.

        A stale `expected_version` fails with ConcurrentModificationConflict; the
        caller must re-read the trade and decide again.
        """
        if event in DISPUTE_EVENTS:
            raise InvalidTransition(
                f"{event.value} is driven by dispute resolution, not a direct transition",
                details={"trade_id": trade_id, "event": event.value},
            )

        trade = lock_trade(session, trade_id)
        if expected_version is not None and trade.version != expected_version:
            logger.warning(
                f"🔒 TRADE_VERSION_CONFLICT: trade={trade_id} expected={expected_version} actual={trade.version}"
            )
            raise ConcurrentModificationConflict(
                f"Trade {trade_id} was modified concurrently (expected version {expected_version}, "
                f"found {trade.version})",
                details={"trade_id": trade_id, "expected_version": expected_version, "version": trade.version},
            )

        current = TradeStatus(trade.status)
        target = cls._resolve_target(trade, current, event, actor)

        cls._apply_money_effects(session, trade, current, target, actor)
        cls._record_transition(session, trade, current, target, event.value, actor, note)
        return TradeSnapshot.from_trade(trade, _find_escrow(session, trade.id))

    @classmethod
    def preview_transition(
        cls, session: Session, trade_id: int, event: TradeEventType, actor: ActorContext
    ) -> TransitionDecision:
        """Dry run of transition(): same checks, no writes"""
        trade = session.get(Trade, trade_id)
        if trade is None:
            raise TradeNotFound(f"Trade {trade_id} not found", details={"trade_id": trade_id})
        current = TradeStatus(trade.status)

        if event in DISPUTE_EVENTS:
            return TransitionDecision(False, current.value, None, f"{event.value} is driven by dispute resolution")
        try:
            target = cls._resolve_target(trade, current, event, actor)
            cls._check_money_preconditions(session, trade, current, target)
        except ValidationError as e:
            return TransitionDecision(False, current.value, None, e.message)
        except EscrowFrozen as e:
            return TransitionDecision(False, current.value, None, e.message)
        return TransitionDecision(True, current.value, target.value, None)

    @classmethod
    def get_snapshot(cls, session: Session, trade_id: int) -> TradeSnapshot:
        trade = session.get(Trade, trade_id)
        if trade is None:
            raise TradeNotFound(f"Trade {trade_id} not found", details={"trade_id": trade_id})
        return TradeSnapshot.from_trade(trade, _find_escrow(session, trade_id))

    @classmethod
    def get_history(cls, session: Session, trade_id: int) -> List[TradeStatusHistory]:
        if session.get(Trade, trade_id) is None:
            raise TradeNotFound(f"Trade {trade_id} not found", details={"trade_id": trade_id})
        return list(
            session.execute(
                select(TradeStatusHistory)
                .where(TradeStatusHistory.trade_id == trade_id)
                .order_by(TradeStatusHistory.id)
            ).scalars()
        )

    @classmethod
    def verify_history_chain(cls, session: Session, trade_id: int) -> bool:
        """Recompute the audit hash chain; False if any row was altered"""
        previous_hash = None
        for row in cls.get_history(session, trade_id):
            actor = ActorContext(actor_id=row.actor_id, role=ActorRole(row.actor_role))
            expected = _audit_hash(previous_hash, trade_id, row.from_status, row.to_status, row.event, actor, row.version)
            if expected != row.audit_hash:
                logger.critical(f"🚨 TRADE_AUDIT_CHAIN_BROKEN: trade={trade_id} history_row={row.id}")
                return False
            previous_hash = row.audit_hash
        return True

    @classmethod
    def sync_trade_with_escrow(
        cls, session: Session, account: EscrowAccount, actor: Optional[ActorContext] = None
    ) -> Optional[TradeStatus]:
        """
        Follow a webhook or admin ledger change with the matching trade transition.
        Runs inside the ledger transaction; the money has already moved.
        """
        trade = lock_trade(session, account.trade_id)
        current = TradeStatus(trade.status)
        actor = actor or ActorContext.system("payment_webhook")
        target = None
        event = None

        if current == TradeStatus.CONTRACTED and is_fully_funded(account):
            target, event = TradeStatus.ESCROW_FUNDED, TradeEventType.FUND_ESCROW
        elif current == TradeStatus.DELIVERED and account.status == EscrowStatus.RELEASED.value:
            target, event = TradeStatus.SETTLED, TradeEventType.SETTLE
        elif (
            account.status == EscrowStatus.REFUNDED.value
            and current not in (TradeStatus.SETTLED, TradeStatus.CANCELLED, TradeStatus.DISPUTED, TradeStatus.RESOLVED)
        ):
            target, event = TradeStatus.CANCELLED, TradeEventType.CANCEL

        if target is None:
            return None

        cls._record_transition(session, trade, current, target, event.value, actor, note="escrow sync")
        return target

    # ------------------------------------------------------------------
    # internals shared with the dispute resolver
    # ------------------------------------------------------------------

    @classmethod
    def _resolve_target(
        cls, trade: Trade, current: TradeStatus, event: TradeEventType, actor: ActorContext,
        resume_to: Optional[TradeStatus] = None,
    ) -> TradeStatus:
        cls._check_participant(trade, actor)

        outcome = apply_event(current, event, resume_to=resume_to)
        if isinstance(outcome, Rejected):
            logger.warning(f"⛔ TRADE_TRANSITION_REJECTED: trade={trade.id} {outcome.reason}")
            raise InvalidTransition(
                outcome.reason,
                details={"trade_id": trade.id, "status": current.value, "event": event.value},
            )

        guard = check_role(current, outcome, actor.role)
        if guard is not None:
            logger.warning(f"⛔ TRADE_ROLE_REJECTED: trade={trade.id} actor={actor.actor_id} {guard.reason}")
            raise UnauthorizedActor(
                guard.reason,
                details={"trade_id": trade.id, "role": actor.role.value, "target": outcome.value},
            )
        return outcome

    @classmethod
    def _check_participant(cls, trade: Trade, actor: ActorContext) -> None:
        if actor.role == ActorRole.BUYER and actor.actor_id != trade.buyer_id:
            raise UnauthorizedActor(f"Actor {actor.actor_id} is not the buyer of trade {trade.id}")
        if actor.role == ActorRole.SELLER and actor.actor_id != trade.seller_id:
            raise UnauthorizedActor(f"Actor {actor.actor_id} is not the seller of trade {trade.id}")

    @classmethod
    def _check_money_preconditions(
        cls, session: Session, trade: Trade, current: TradeStatus, target: TradeStatus
    ) -> Optional[EscrowAccount]:
        account = _find_escrow(session, trade.id)

        if target == TradeStatus.ESCROW_FUNDED:
            if account is None or not is_fully_funded(account):
                raise InvalidTransition(
                    f"Trade {trade.id} escrow is not fully funded",
                    details={"trade_id": trade.id, "escrow_status": account.status if account else None},
                )
        elif target == TradeStatus.SETTLED:
            if account is None or stored_sums(account).total == MonetaryDecimal.ZERO:
                raise InvalidTransition(f"Trade {trade.id} cannot settle without a funded escrow")
            if account.status == EscrowStatus.REFUNDED.value:
                raise InvalidTransition(f"Trade {trade.id} escrow was refunded; nothing to settle")
        elif target == TradeStatus.CANCELLED and has_open_dispute(session, trade.id):
            raise EscrowFrozen(
                f"Trade {trade.id} has an open dispute and cannot be cancelled",
                details={"trade_id": trade.id},
            )
        return account

    @classmethod
    def _apply_money_effects(
        cls, session: Session, trade: Trade, current: TradeStatus, target: TradeStatus, actor: ActorContext
    ) -> None:
        account = cls._check_money_preconditions(session, trade, current, target)
        cause = EscrowEventCause.ADMIN if actor.role == ActorRole.ADMIN else EscrowEventCause.TRADE_TRANSITION

        if target == TradeStatus.CONTRACTED:
            EscrowSettlementEngine.open_account(session, trade)

        elif target == TradeStatus.SETTLED:
            held = stored_sums(account).held
            if held > MonetaryDecimal.ZERO:
                EscrowSettlementEngine.release(
                    session, account.id, held, reason=f"trade {trade.id} settled",
                    caused_by=cause, actor_id=actor.actor_id,
                )

        elif target == TradeStatus.CANCELLED and account is not None:
            sums = stored_sums(account)
            if sums.held > MonetaryDecimal.ZERO:
                # Cancellation after funding is a refund; there is no other way to un-hold money
                EscrowSettlementEngine.refund(
                    session, account.id, sums.held, reason=f"trade {trade.id} cancelled",
                    caused_by=cause, actor_id=actor.actor_id,
                )
            elif sums.total == MonetaryDecimal.ZERO:
                EscrowSettlementEngine.close_unfunded(session, account.id)

    @classmethod
    def _record_transition(
        cls,
        session: Session,
        trade: Trade,
        current: TradeStatus,
        target: TradeStatus,
        event: str,
        actor: ActorContext,
        note: Optional[str] = None,
    ) -> None:
        versioned_update(session, trade, {"status": target.value}, trade.version)
        cls._append_history(session, trade, current, target, event, actor, note)

        notification_service.emit(
            session,
            trade.id,
            f"trade.{target.value}",
            {"from_status": current.value, "to_status": target.value, "actor_role": actor.role.value},
        )
        logger.info(
            f"🔁 TRADE_TRANSITION: trade={trade.id} {current.value} → {target.value} "
            f"event={event} actor={actor.actor_id}({actor.role.value}) v{trade.version}"
        )

    @classmethod
    def _append_history(
        cls,
        session: Session,
        trade: Trade,
        current: Optional[TradeStatus],
        target: TradeStatus,
        event: str,
        actor: ActorContext,
        note: Optional[str] = None,
    ) -> TradeStatusHistory:
        previous_hash = session.execute(
            select(TradeStatusHistory.audit_hash)
            .where(TradeStatusHistory.trade_id == trade.id)
            .order_by(TradeStatusHistory.id.desc())
            .limit(1)
        ).scalar_one_or_none()

        from_status = current.value if current else None
        row = TradeStatusHistory(
            trade_id=trade.id,
            from_status=from_status,
            to_status=target.value,
            event=event,
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
            version=trade.version,
            audit_hash=_audit_hash(previous_hash, trade.id, from_status, target.value, event, actor, trade.version),
            note=note,
        )
        session.add(row)
        session.flush()
        return row
