"""
Admin Routes
Privileged dispute and escrow actions. Authenticated by X-Admin-Token; the
acting admin is identified by X-Actor-Id and recorded on every escrow event.
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from database import get_db
from models import ActorRole, DisputeOutcome
from routes.error_mapping import to_http_exception
from services.admin_service import AdminService, EscrowOverrideOperation, verify_admin_token
from services.trade_lifecycle_service import ActorContext
from utils.exceptions import TradeEngineError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class ResolveDisputeRequest(BaseModel):
    outcome: str
    note: Optional[str] = None
    release_amount: Optional[Decimal] = None
    refund_amount: Optional[Decimal] = None


class EscalateDisputeRequest(BaseModel):
    note: Optional[str] = None


class EscrowOverrideRequest(BaseModel):
    operation: str
    amount: Decimal
    reason: Optional[str] = None


def require_admin_actor(
    x_admin_token: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
) -> ActorContext:
    if not verify_admin_token(x_admin_token):
        logger.warning(f"🚨 ADMIN_AUTH_FAILED: actor={x_actor_id}")
        raise HTTPException(status_code=401, detail="Invalid admin credentials")
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="X-Actor-Id header required")
    return ActorContext(actor_id=x_actor_id, role=ActorRole.ADMIN)


def _parse_enum(enum_cls, value: str, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise HTTPException(status_code=400, detail=f"Invalid {field} '{value}'; expected one of: {allowed}")


@router.post("/disputes/{dispute_id}/resolve")
def resolve_dispute(
    dispute_id: int,
    body: ResolveDisputeRequest,
    actor: ActorContext = Depends(require_admin_actor),
    session: Session = Depends(get_db),
):
    outcome = _parse_enum(DisputeOutcome, body.outcome, "outcome")
    try:
        result = AdminService.resolve_dispute(
            session, dispute_id, outcome, body.note, actor,
            release_amount=body.release_amount, refund_amount=body.refund_amount,
        )
    except TradeEngineError as e:
        raise to_http_exception(e)
    return result.to_dict()


@router.post("/disputes/{dispute_id}/escalate")
def escalate_dispute(
    dispute_id: int,
    body: Optional[EscalateDisputeRequest] = None,
    actor: ActorContext = Depends(require_admin_actor),
    session: Session = Depends(get_db),
):
    try:
        dispute = AdminService.escalate_dispute(session, dispute_id, actor, note=body.note if body else None)
    except TradeEngineError as e:
        raise to_http_exception(e)
    return {"dispute_id": dispute.id, "trade_id": dispute.trade_id, "status": dispute.status}


@router.post("/escrows/{escrow_id}/override")
def manual_escrow_override(
    escrow_id: int,
    body: EscrowOverrideRequest,
    actor: ActorContext = Depends(require_admin_actor),
    session: Session = Depends(get_db),
):
    operation = _parse_enum(EscrowOverrideOperation, body.operation, "operation")
    try:
        result = AdminService.manual_escrow_override(
            session, escrow_id, operation, body.amount, actor, reason=body.reason
        )
    except TradeEngineError as e:
        raise to_http_exception(e)

    account = result.account
    return {
        "escrow_id": account.id,
        "event_id": result.event.id,
        "event_type": result.event.event_type,
        "caused_by": result.event.caused_by,
        "status": account.status,
        "held_amount": str(account.held_amount),
        "released_amount": str(account.released_amount),
        "refunded_amount": str(account.refunded_amount),
        "total_amount": str(account.total_amount),
    }


@router.get("/escrows/{escrow_id}/audit")
def audit_escrow(
    escrow_id: int,
    actor: ActorContext = Depends(require_admin_actor),
    session: Session = Depends(get_db),
):
    try:
        report = AdminService.audit_escrow(session, escrow_id, actor)
    except TradeEngineError as e:
        raise to_http_exception(e)
    return report.to_dict()
