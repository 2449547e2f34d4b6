"""
Trade Routes
Request handlers used by the marketplace front end. The authentication
gateway in front of this service supplies X-Actor-Id / X-Actor-Role.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database import get_db
from models import ActorRole, TradeEventType
from routes.error_mapping import to_http_exception
from services.admin_service import verify_admin_token
from services.dispute_resolution import DisputeResolutionService
from services.readiness_scorer import ReadinessService
from services.trade_lifecycle_service import ActorContext, TradeLifecycleService, TradeSnapshot
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import TradeEngineError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trades", tags=["trades"])

_readiness_service: Optional[ReadinessService] = None


class CreateTradeRequest(BaseModel):
    buyer_id: str
    seller_id: str
    currency: str
    agreed_amount: Decimal
    metadata: Dict[str, Any] = Field(default_factory=dict)
    direct_checkout: bool = False


class TransitionRequest(BaseModel):
    event: str
    expected_version: Optional[int] = None
    note: Optional[str] = None


class OpenDisputeRequest(BaseModel):
    against: str
    reason: str
    raised_by: Optional[str] = None  # admins open disputes on behalf of a party


def get_readiness_service() -> ReadinessService:
    global _readiness_service
    if _readiness_service is None:
        _readiness_service = ReadinessService()
    return _readiness_service


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None),
) -> ActorContext:
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="X-Actor-Id and X-Actor-Role headers required")
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown actor role '{x_actor_role}'")

    # system is reserved for the reconciler; admin needs the admin token as well
    if role == ActorRole.SYSTEM:
        raise HTTPException(status_code=403, detail="system role is not available to API callers")
    if role == ActorRole.ADMIN and not verify_admin_token(x_admin_token):
        raise HTTPException(status_code=403, detail="Admin role requires a valid admin token")
    return ActorContext(actor_id=x_actor_id, role=role)


def _parse_event(value: str) -> TradeEventType:
    try:
        return TradeEventType(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown trade event '{value}'")


@router.post("", status_code=201)
def create_trade(
    body: CreateTradeRequest,
    actor: ActorContext = Depends(get_actor),
    session: Session = Depends(get_db),
):
    if actor.role == ActorRole.BUYER and actor.actor_id != body.buyer_id:
        raise HTTPException(status_code=403, detail="Buyers can only create trades for themselves")
    if actor.role == ActorRole.SELLER:
        raise HTTPException(status_code=403, detail="Trades are created by the buyer")

    try:
        with atomic_transaction(session):
            trade = TradeLifecycleService.create_trade(
                session,
                buyer_id=body.buyer_id,
                seller_id=body.seller_id,
                currency=body.currency,
                agreed_amount=body.agreed_amount,
                metadata=body.metadata,
                direct_checkout=body.direct_checkout,
                actor=actor,
            )
        snapshot = TradeLifecycleService.get_snapshot(session, trade.id)
    except TradeEngineError as e:
        raise to_http_exception(e)
    return snapshot.to_dict()


@router.get("/{trade_id}")
def get_trade(trade_id: int, actor: ActorContext = Depends(get_actor), session: Session = Depends(get_db)):
    try:
        snapshot = TradeLifecycleService.get_snapshot(session, trade_id)
    except TradeEngineError as e:
        raise to_http_exception(e)
    _ensure_party(snapshot, actor)
    return snapshot.to_dict()


@router.post("/{trade_id}/transitions")
def transition_trade(
    trade_id: int,
    body: TransitionRequest,
    actor: ActorContext = Depends(get_actor),
    session: Session = Depends(get_db),
):
    event = _parse_event(body.event)
    try:
        with atomic_transaction(session):
            snapshot = TradeLifecycleService.transition(
                session, trade_id, event, actor, expected_version=body.expected_version, note=body.note
            )
    except TradeEngineError as e:
        raise to_http_exception(e)
    return snapshot.to_dict()


@router.post("/{trade_id}/transitions/preview")
def preview_transition(
    trade_id: int,
    body: TransitionRequest,
    actor: ActorContext = Depends(get_actor),
    session: Session = Depends(get_db),
):
    event = _parse_event(body.event)
    try:
        decision = TradeLifecycleService.preview_transition(session, trade_id, event, actor)
    except TradeEngineError as e:
        raise to_http_exception(e)
    return decision.to_dict()


@router.post("/{trade_id}/disputes", status_code=201)
def open_dispute(
    trade_id: int,
    body: OpenDisputeRequest,
    actor: ActorContext = Depends(get_actor),
    session: Session = Depends(get_db),
):
    raised_by = body.raised_by if actor.role == ActorRole.ADMIN and body.raised_by else actor.actor_id
    try:
        with atomic_transaction(session):
            dispute = DisputeResolutionService.open_dispute(
                session, trade_id, raised_by=raised_by, against=body.against, reason=body.reason, actor=actor
            )
    except TradeEngineError as e:
        raise to_http_exception(e)
    return {
        "dispute_id": dispute.id,
        "trade_id": dispute.trade_id,
        "status": dispute.status,
        "prior_trade_status": dispute.prior_trade_status,
    }


@router.get("/{trade_id}/readiness")
def trade_readiness(
    trade_id: int,
    actor: ActorContext = Depends(get_actor),
    session: Session = Depends(get_db),
    readiness: ReadinessService = Depends(get_readiness_service),
):
    try:
        _ensure_party(TradeLifecycleService.get_snapshot(session, trade_id), actor)
        snapshot = readiness.score_trade(session, trade_id)
    except TradeEngineError as e:
        raise to_http_exception(e)
    return snapshot.to_dict()


@router.get("/{trade_id}/history")
def trade_history(trade_id: int, actor: ActorContext = Depends(get_actor), session: Session = Depends(get_db)):
    try:
        _ensure_party(TradeLifecycleService.get_snapshot(session, trade_id), actor)
        rows = TradeLifecycleService.get_history(session, trade_id)
        chain_intact = TradeLifecycleService.verify_history_chain(session, trade_id)
    except TradeEngineError as e:
        raise to_http_exception(e)
    return {
        "trade_id": trade_id,
        "chain_intact": chain_intact,
        "transitions": [
            {
                "from_status": row.from_status,
                "to_status": row.to_status,
                "event": row.event,
                "actor_id": row.actor_id,
                "actor_role": row.actor_role,
                "version": row.version,
                "audit_hash": row.audit_hash,
                "note": row.note,
            }
            for row in rows
        ],
    }


def _ensure_party(snapshot: TradeSnapshot, actor: ActorContext) -> None:
    if actor.role == ActorRole.ADMIN:
        return
    if actor.actor_id not in (snapshot.buyer_id, snapshot.seller_id):
        raise HTTPException(status_code=403, detail="Not a party to this trade")
