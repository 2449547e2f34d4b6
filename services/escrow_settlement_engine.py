"""
Escrow Settlement Engine
The only component permitted to move money. Every operation appends exactly
one EscrowEvent and recomputes the account sums inside the caller's
transaction, under a row lock on the escrow account.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import (
    CLOSED_ESCROW_STATUSES,
    OPEN_DISPUTE_STATUSES,
    Dispute,
    EscrowAccount,
    EscrowEvent,
    EscrowEventCause,
    EscrowEventType,
    EscrowStatus,
    PlatformRevenue,
    Trade,
)
from services.notification_service import notification_service
from utils.atomic_transactions import lock_escrow
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import (
    EscrowAlreadyClosed,
    EscrowFrozen,
    EscrowNotFound,
    EventNotYetApplicable,
    InsufficientHeldFunds,
    InvalidAmount,
    LedgerMismatch,
    ValidationError,
)
from utils.optimistic_locking import versioned_update

logger = logging.getLogger(__name__)

ZERO = MonetaryDecimal.ZERO


class LedgerSums(NamedTuple):
    total: Decimal
    held: Decimal
    released: Decimal
    refunded: Decimal


class EscrowOperationResult(NamedTuple):
    account: EscrowAccount
    event: EscrowEvent
    commission: Optional[Decimal] = None


@dataclass
class LedgerAuditReport:
    escrow_id: int
    consistent: bool
    stored: LedgerSums
    folded: LedgerSums
    stored_status: str
    derived_status: str
    event_count: int
    mismatches: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escrow_id": self.escrow_id,
            "consistent": self.consistent,
            "stored": {k: str(v) for k, v in self.stored._asdict().items()},
            "folded": {k: str(v) for k, v in self.folded._asdict().items()},
            "stored_status": self.stored_status,
            "derived_status": self.derived_status,
            "event_count": self.event_count,
            "mismatches": self.mismatches,
        }


def fold_events(events: Iterable[EscrowEvent]) -> LedgerSums:
    """Replay escrow events in creation order into running sums"""
    total = held = released = refunded = ZERO
    for ev in events:
        amount = MonetaryDecimal.quantize(ev.amount)
        if ev.event_type == EscrowEventType.HOLD.value:
            total += amount
            held += amount
        elif ev.event_type in (EscrowEventType.RELEASE.value, EscrowEventType.PARTIAL_RELEASE.value):
            held -= amount
            released += amount
        elif ev.event_type == EscrowEventType.REFUND.value:
            held -= amount
            refunded += amount
    return LedgerSums(total, held, released, refunded)


def derive_status(required: Decimal, sums: LedgerSums, closed: bool = False) -> EscrowStatus:
    """Escrow status is a function of the sums, never set independently"""
    if sums.total == ZERO:
        return EscrowStatus.CANCELLED if closed else EscrowStatus.REQUIRED
    if sums.released == ZERO and sums.refunded == ZERO:
        return EscrowStatus.PENDING if sums.held < required else EscrowStatus.HELD
    if sums.held == ZERO:
        return EscrowStatus.RELEASED if sums.released > ZERO else EscrowStatus.REFUNDED
    return EscrowStatus.PARTIALLY_RELEASED


def stored_sums(account: EscrowAccount) -> LedgerSums:
    return LedgerSums(
        MonetaryDecimal.quantize(account.total_amount),
        MonetaryDecimal.quantize(account.held_amount),
        MonetaryDecimal.quantize(account.released_amount),
        MonetaryDecimal.quantize(account.refunded_amount),
    )


def is_fully_funded(account: EscrowAccount) -> bool:
    return MonetaryDecimal.quantize(account.total_amount) >= MonetaryDecimal.quantize(account.required_amount)


def has_open_dispute(session: Session, trade_id: int) -> bool:
    return session.execute(
        select(Dispute.id).where(
            Dispute.trade_id == trade_id, Dispute.status.in_(OPEN_DISPUTE_STATUSES)
        )
    ).first() is not None


class EscrowSettlementEngine:
    """hold / release / refund against the escrow ledger"""

    @classmethod
    def open_account(cls, session: Session, trade: Trade) -> EscrowAccount:
        """Create the trade's single escrow account (idempotent per trade)"""
        existing = session.execute(
            select(EscrowAccount).where(EscrowAccount.trade_id == trade.id)
        ).scalar_one_or_none()
        if existing is not None:
            return existing

        account = EscrowAccount(
            trade_id=trade.id,
            status=EscrowStatus.REQUIRED.value,
            currency=trade.currency,
            required_amount=MonetaryDecimal.positive(trade.agreed_amount, "escrow required amount"),
            total_amount=ZERO,
            held_amount=ZERO,
            released_amount=ZERO,
            refunded_amount=ZERO,
        )
        session.add(account)
        session.flush()
        logger.info(
            f"🏦 ESCROW_OPENED: escrow={account.id} trade={trade.id} "
            f"required={account.required_amount} {account.currency}"
        )
        return account

    @classmethod
    def get_account(cls, session: Session, escrow_id: int) -> EscrowAccount:
        account = session.get(EscrowAccount, escrow_id)
        if account is None:
            raise EscrowNotFound(f"Escrow account {escrow_id} not found", details={"escrow_id": escrow_id})
        return account

    @classmethod
    def hold(
        cls,
        session: Session,
        escrow_id: int,
        amount,
        external_ref: Optional[str] = None,
        caused_by: EscrowEventCause = EscrowEventCause.WEBHOOK,
        actor_id: Optional[str] = None,
        currency: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> EscrowOperationResult:
        """Reserve funds against the trade: held += amount, total += amount"""
        account = lock_escrow(session, escrow_id=escrow_id)
        value = cls._validate_amount(account, amount, currency, "hold")
        cls._ensure_open(account, "hold")

        if account.status not in (EscrowStatus.REQUIRED.value, EscrowStatus.PENDING.value):
            raise InvalidAmount(
                f"Escrow {account.id} is {account.status}; holds are accepted only while required or pending",
                details={"escrow_id": account.id, "status": account.status},
            )
        cls._ensure_not_frozen(session, account, caused_by)

        sums = stored_sums(account)
        remaining = MonetaryDecimal.quantize(account.required_amount) - sums.total
        if value > remaining:
            raise InvalidAmount(
                f"Hold of {value} exceeds remaining required amount {remaining}",
                details={"escrow_id": account.id, "amount": str(value), "remaining": str(remaining)},
            )

        new_sums = LedgerSums(sums.total + value, sums.held + value, sums.released, sums.refunded)
        event = cls._append(
            session, account, EscrowEventType.HOLD, value, new_sums,
            caused_by=caused_by, actor_id=actor_id, external_ref=external_ref, reason=reason,
        )
        logger.info(
            f"💰 ESCROW_HOLD: escrow={account.id} trade={account.trade_id} amount={value} "
            f"{account.currency} held={account.held_amount} status={account.status} cause={caused_by.value}"
        )
        return EscrowOperationResult(account, event)

    @classmethod
    def release(
        cls,
        session: Session,
        escrow_id: int,
        amount,
        reason: Optional[str] = None,
        caused_by: EscrowEventCause = EscrowEventCause.WEBHOOK,
        actor_id: Optional[str] = None,
        external_ref: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> EscrowOperationResult:
        """Move funds from held to released; commission is recorded on the released amount"""
        account = lock_escrow(session, escrow_id=escrow_id)
        value = cls._validate_amount(account, amount, currency, "release")
        sums = cls._check_payout(session, account, value, caused_by, "release")

        event_type = EscrowEventType.RELEASE if value == sums.held else EscrowEventType.PARTIAL_RELEASE
        new_sums = LedgerSums(sums.total, sums.held - value, sums.released + value, sums.refunded)
        event = cls._append(
            session, account, event_type, value, new_sums,
            caused_by=caused_by, actor_id=actor_id, external_ref=external_ref, reason=reason,
        )
        commission = cls._record_commission(session, account, event)
        logger.info(
            f"💸 ESCROW_RELEASE: escrow={account.id} trade={account.trade_id} amount={value} "
            f"{account.currency} held={account.held_amount} status={account.status} "
            f"commission={commission} cause={caused_by.value}"
        )
        return EscrowOperationResult(account, event, commission)

    @classmethod
    def refund(
        cls,
        session: Session,
        escrow_id: int,
        amount,
        reason: Optional[str] = None,
        caused_by: EscrowEventCause = EscrowEventCause.WEBHOOK,
        actor_id: Optional[str] = None,
        external_ref: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> EscrowOperationResult:
        """Move funds from held back to the buyer"""
        account = lock_escrow(session, escrow_id=escrow_id)
        value = cls._validate_amount(account, amount, currency, "refund")
        sums = cls._check_payout(session, account, value, caused_by, "refund")

        new_sums = LedgerSums(sums.total, sums.held - value, sums.released, sums.refunded + value)
        event = cls._append(
            session, account, EscrowEventType.REFUND, value, new_sums,
            caused_by=caused_by, actor_id=actor_id, external_ref=external_ref, reason=reason,
        )
        logger.info(
            f"↩️ ESCROW_REFUND: escrow={account.id} trade={account.trade_id} amount={value} "
            f"{account.currency} held={account.held_amount} status={account.status} cause={caused_by.value}"
        )
        return EscrowOperationResult(account, event)

    @classmethod
    def close_unfunded(cls, session: Session, escrow_id: int) -> EscrowAccount:
        """Close an account that never received funds (trade cancelled before funding)"""
        account = lock_escrow(session, escrow_id=escrow_id)
        sums = stored_sums(account)
        if sums.total != ZERO:
            raise InvalidAmount(
                f"Escrow {account.id} has received funds and must be refunded, not closed",
                details={"escrow_id": account.id, "total": str(sums.total)},
            )
        if account.closed_at is not None:
            return account

        versioned_update(
            session,
            account,
            {
                "status": derive_status(account.required_amount, sums, closed=True).value,
                "closed_at": datetime.now(timezone.utc),
            },
            account.version,
        )
        logger.info(f"🔒 ESCROW_CLOSED_UNFUNDED: escrow={account.id} trade={account.trade_id}")
        return account

    @classmethod
    def audit_account(cls, session: Session, escrow_id: int) -> LedgerAuditReport:
        """Re-fold the event log and compare with the stored sums; never corrects anything"""
        account = session.execute(
            select(EscrowAccount)
            .where(EscrowAccount.id == escrow_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if account is None:
            raise EscrowNotFound(f"Escrow account {escrow_id} not found", details={"escrow_id": escrow_id})

        events = session.execute(
            select(EscrowEvent).where(EscrowEvent.escrow_id == escrow_id).order_by(EscrowEvent.id)
        ).scalars().all()

        stored = stored_sums(account)
        folded = fold_events(events)
        derived = derive_status(
            MonetaryDecimal.quantize(account.required_amount), folded, closed=account.closed_at is not None
        )

        mismatches = [
            f"{name}: stored={getattr(stored, name)} folded={getattr(folded, name)}"
            for name in LedgerSums._fields
            if getattr(stored, name) != getattr(folded, name)
        ]
        if stored.held + stored.released + stored.refunded != stored.total:
            mismatches.append("stored sums violate held + released + refunded == total")
        if account.status != derived.value:
            mismatches.append(f"status: stored={account.status} derived={derived.value}")

        report = LedgerAuditReport(
            escrow_id=account.id,
            consistent=not mismatches,
            stored=stored,
            folded=folded,
            stored_status=account.status,
            derived_status=derived.value,
            event_count=len(events),
            mismatches=mismatches,
        )
        if mismatches:
            logger.critical(f"🚨 LEDGER_AUDIT_MISMATCH: escrow={account.id} {mismatches}")
        else:
            logger.info(f"✅ LEDGER_AUDIT_OK: escrow={account.id} events={len(events)}")
        return report

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    @classmethod
    def _validate_amount(cls, account: EscrowAccount, amount, currency: Optional[str], operation: str) -> Decimal:
        value = MonetaryDecimal.positive(amount, f"escrow {operation}")
        if currency is not None and not isinstance(currency, str):
            raise ValidationError(f"Currency must be a string, got {type(currency).__name__}")
        if currency and currency.upper() != account.currency.upper():
            raise InvalidAmount(
                f"Currency {currency} does not match escrow currency {account.currency}",
                details={"escrow_id": account.id, "currency": currency},
            )
        return value

    @classmethod
    def _ensure_open(cls, account: EscrowAccount, operation: str) -> None:
        if account.status in CLOSED_ESCROW_STATUSES or account.closed_at is not None:
            logger.warning(
                f"⚠️ ESCROW_CLOSED_REJECTED: {operation} on escrow={account.id} status={account.status}"
            )
            raise EscrowAlreadyClosed(
                f"Escrow {account.id} is already {account.status}",
                details={"escrow_id": account.id, "status": account.status, "operation": operation},
            )

    @classmethod
    def _ensure_not_frozen(cls, session: Session, account: EscrowAccount, caused_by: EscrowEventCause) -> None:
        if caused_by == EscrowEventCause.DISPUTE_RESOLUTION:
            return
        if has_open_dispute(session, account.trade_id):
            logger.warning(
                f"🧊 ESCROW_FROZEN: escrow={account.id} trade={account.trade_id} "
                f"rejected {caused_by.value} mutation while a dispute is open"
            )
            raise EscrowFrozen(
                f"Escrow {account.id} is frozen by an open dispute",
                details={"escrow_id": account.id, "trade_id": account.trade_id},
            )

    @classmethod
    def _check_payout(
        cls, session: Session, account: EscrowAccount, value: Decimal, caused_by: EscrowEventCause, operation: str
    ) -> LedgerSums:
        cls._ensure_open(account, operation)
        cls._ensure_not_frozen(session, account, caused_by)

        sums = stored_sums(account)
        if sums.total == ZERO:
            # Out-of-order delivery: the hold this depends on has not landed yet
            raise EventNotYetApplicable(
                f"Escrow {account.id} has not been funded yet; {operation} cannot apply",
                details={"escrow_id": account.id, "operation": operation},
            )
        if value > sums.held:
            logger.warning(
                f"⚠️ INSUFFICIENT_HELD_FUNDS: {operation} {value} on escrow={account.id} held={sums.held}"
            )
            raise InsufficientHeldFunds(
                f"Cannot {operation} {value}: only {sums.held} held",
                details={"escrow_id": account.id, "amount": str(value), "held": str(sums.held)},
            )
        return sums

    @classmethod
    def _append(
        cls,
        session: Session,
        account: EscrowAccount,
        event_type: EscrowEventType,
        amount: Decimal,
        new_sums: LedgerSums,
        caused_by: EscrowEventCause,
        actor_id: Optional[str],
        external_ref: Optional[str],
        reason: Optional[str],
    ) -> EscrowEvent:
        if (
            min(new_sums) < ZERO
            or new_sums.held + new_sums.released + new_sums.refunded != new_sums.total
        ):
            logger.critical(f"🚨 LEDGER_INVARIANT_VIOLATION: escrow={account.id} proposed={new_sums}")
            raise LedgerMismatch(
                f"Escrow {account.id} sums would break the ledger invariant",
                details={"escrow_id": account.id, "proposed": {k: str(v) for k, v in new_sums._asdict().items()}},
            )

        required = MonetaryDecimal.quantize(account.required_amount)
        status = derive_status(required, new_sums)
        updates = {
            "total_amount": new_sums.total,
            "held_amount": new_sums.held,
            "released_amount": new_sums.released,
            "refunded_amount": new_sums.refunded,
            "status": status.value,
        }
        if new_sums.held == ZERO and new_sums.total > ZERO:
            updates["closed_at"] = datetime.now(timezone.utc)

        event = EscrowEvent(
            escrow_id=account.id,
            event_type=event_type.value,
            amount=amount,
            currency=account.currency,
            external_ref=external_ref,
            reason=reason,
            caused_by=caused_by.value,
            actor_id=actor_id,
        )
        session.add(event)
        session.flush()

        versioned_update(session, account, updates, account.version)

        notification_service.emit(
            session,
            account.trade_id,
            f"escrow.{event_type.value}",
            {
                "escrow_id": account.id,
                "amount": str(amount),
                "currency": account.currency,
                "status": status.value,
                "caused_by": caused_by.value,
            },
        )
        return event

    @classmethod
    def _record_commission(cls, session: Session, account: EscrowAccount, event: EscrowEvent) -> Optional[Decimal]:
        percentage = Config.ESCROW_FEE_PERCENTAGE
        if percentage <= ZERO:
            return None
        fee = MonetaryDecimal.percentage_of(event.amount, percentage)
        session.add(
            PlatformRevenue(
                escrow_id=account.id,
                escrow_event_id=event.id,
                fee_amount=fee,
                fee_currency=account.currency,
                fee_percentage=percentage,
            )
        )
        session.flush()
        return fee
