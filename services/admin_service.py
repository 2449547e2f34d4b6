"""
Admin Service - privileged dispute and escrow actions

Every action requires an authenticated admin actor and is audited through the
`caused_by`/`actor_id` of the escrow events it writes. InvariantViolation and
FatalError propagate to the caller untouched; there is no silent fallback.
"""

import hmac
import logging
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from config import Config
from models import ActorRole, DisputeOutcome, EscrowEventCause
from services.dispute_resolution import DisputeResolutionService, ResolutionResult
from services.escrow_settlement_engine import EscrowOperationResult, EscrowSettlementEngine, LedgerAuditReport
from services.trade_lifecycle_service import ActorContext, TradeLifecycleService
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import UnauthorizedActor

logger = logging.getLogger(__name__)


class EscrowOverrideOperation(Enum):
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"


def verify_admin_token(token: Optional[str]) -> bool:
    """Constant-time check of the admin API token; no token configured means no admin access"""
    expected = Config.ADMIN_API_TOKEN
    if not expected or not token:
        return False
    return hmac.compare_digest(token, expected)


def _require_admin(actor: ActorContext) -> None:
    if actor.role != ActorRole.ADMIN or not actor.actor_id:
        logger.warning(f"🚨 ADMIN_ACTION_DENIED: actor={actor.actor_id} role={actor.role.value}")
        raise UnauthorizedActor("Admin privileges required", details={"actor_id": actor.actor_id})


class AdminService:
    """Admin action surface"""

    @classmethod
    def resolve_dispute(
        cls,
        session: Session,
        dispute_id: int,
        outcome: DisputeOutcome,
        note: Optional[str],
        actor: ActorContext,
        release_amount=None,
        refund_amount=None,
    ) -> ResolutionResult:
        _require_admin(actor)
        with atomic_transaction(session):
            result = DisputeResolutionService.resolve(
                session, dispute_id, outcome, note, actor,
                release_amount=release_amount, refund_amount=refund_amount,
            )
        logger.info(f"🛡️ ADMIN_DISPUTE_RESOLVED: dispute={dispute_id} outcome={outcome.value} by={actor.actor_id}")
        return result

    @classmethod
    def escalate_dispute(cls, session: Session, dispute_id: int, actor: ActorContext, note: Optional[str] = None):
        _require_admin(actor)
        with atomic_transaction(session):
            dispute = DisputeResolutionService.escalate(session, dispute_id, actor, note)
        return dispute

    @classmethod
    def manual_escrow_override(
        cls,
        session: Session,
        escrow_id: int,
        operation: EscrowOverrideOperation,
        amount,
        actor: ActorContext,
        reason: Optional[str] = None,
    ) -> EscrowOperationResult:
        """
        Apply a hold/release/refund by hand. Goes through the settlement engine
        like any other mutation, so the sum invariant and dispute freeze apply.
        """
        _require_admin(actor)
        reason = reason or f"manual {operation.value} by admin {actor.actor_id}"
        operations = {
            EscrowOverrideOperation.HOLD: EscrowSettlementEngine.hold,
            EscrowOverrideOperation.RELEASE: EscrowSettlementEngine.release,
            EscrowOverrideOperation.REFUND: EscrowSettlementEngine.refund,
        }

        with atomic_transaction(session):
            result = operations[operation](
                session, escrow_id, amount,
                reason=reason, caused_by=EscrowEventCause.ADMIN, actor_id=actor.actor_id,
            )
            TradeLifecycleService.sync_trade_with_escrow(session, result.account, actor=actor)

        logger.warning(
            f"🛡️ ADMIN_ESCROW_OVERRIDE: escrow={escrow_id} op={operation.value} amount={result.event.amount} "
            f"by={actor.actor_id} reason={reason}"
        )
        return result

    @classmethod
    def audit_escrow(cls, session: Session, escrow_id: int, actor: ActorContext) -> LedgerAuditReport:
        _require_admin(actor)
        return EscrowSettlementEngine.audit_account(session, escrow_id)
