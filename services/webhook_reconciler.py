"""
Payment Webhook Reconciler
Applies payment provider events to the escrow ledger exactly once.

Per event:
1. claim the event id (first write of the transaction; duplicates stop here)
2. apply the escrow operation and synchronize the trade, same transaction
3. mark the claim completed and commit

Retryable failures roll everything back and answer 503 so the provider
redelivers. Non-retryable failures roll the ledger back and keep a `failed`
row for manual review, answering 200 so the provider stops retrying.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal
from models import EscrowEventCause, Trade, TradeStatus
from services.escrow_settlement_engine import EscrowSettlementEngine
from services.notification_service import notification_service
from services.trade_lifecycle_service import TradeLifecycleService
from services.webhook_idempotency_service import WebhookIdempotencyService
from utils.atomic_transactions import lock_escrow
from utils.trade_state_machine import is_terminal
from utils.exceptions import (
    DuplicateEvent,
    EscrowNotFound,
    EventNotYetApplicable,
    TradeEngineError,
    ValidationError,
)

logger = logging.getLogger(__name__)

HOLD_EVENT_TYPES = frozenset({"checkout.session.completed", "charge.completed", "payment.succeeded"})
RELEASE_EVENT_TYPES = frozenset({"transfer.completed", "payout.completed"})
REFUND_EVENT_TYPES = frozenset({"charge.refunded", "refund.completed"})
FAILED_PAYMENT_EVENT_TYPES = frozenset({"payment_intent.payment_failed", "payment.failed"})


@dataclass
class PaymentEvent:
    """Parsed provider envelope {id, type, data}"""
    event_id: str
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconciliationResult:
    http_status: int
    status: str
    event_id: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "event_id": self.event_id, "detail": self.detail}


def parse_envelope(body: bytes) -> PaymentEvent:
    """Parse and shape-check the provider envelope; raises ValidationError"""
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Invalid JSON payload: {e}")

    if not isinstance(payload, dict):
        raise ValidationError("Webhook envelope must be a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    data = payload.get("data")
    if not isinstance(event_id, str) or not event_id.strip():
        raise ValidationError("Webhook envelope is missing an event id")
    if not isinstance(event_type, str) or not event_type.strip():
        raise ValidationError("Webhook envelope is missing an event type")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Webhook envelope data must be an object")

    return PaymentEvent(event_id=event_id.strip(), event_type=event_type.strip(), data=data)


class WebhookReconciler:
    """Drives the escrow engine and trade state machine from provider events"""

    @classmethod
    def process_event(cls, event: PaymentEvent, session: Optional[Session] = None) -> ReconciliationResult:
        owns_session = session is None
        session = session or SessionLocal()
        try:
            return cls._process(session, event)
        finally:
            if owns_session:
                session.close()

    @classmethod
    def _process(cls, session: Session, event: PaymentEvent) -> ReconciliationResult:
        try:
            claimed = WebhookIdempotencyService.claim(session, event.event_id, event.event_type)
        except DuplicateEvent as e:
            return ReconciliationResult(200, "duplicate", event.event_id, e.details.get("previous_status"))
        except OperationalError as e:
            session.rollback()
            logger.critical(f"🚨 LEDGER_STORE_UNAVAILABLE: cannot claim event {event.event_id}: {e}")
            return ReconciliationResult(503, "retry", event.event_id, "ledger store unavailable")

        try:
            outcome = cls._apply(session, event)
            WebhookIdempotencyService.mark_completed(session, claimed, outcome)
            session.commit()
        except TradeEngineError as e:
            session.rollback()
            if e.retryable:
                logger.warning(
                    f"⏳ WEBHOOK_RETRY: event_id={event.event_id} type={event.event_type} "
                    f"{e.code}: {e.message}"
                )
                return ReconciliationResult(503, "retry", event.event_id, e.code)

            WebhookIdempotencyService.record_failed(
                session, event.event_id, event.event_type, f"{e.code}: {e.message}"
            )
            return ReconciliationResult(200, "failed", event.event_id, e.code)
        except OperationalError as e:
            session.rollback()
            logger.critical(f"🚨 LEDGER_STORE_UNAVAILABLE: event {event.event_id} rolled back: {e}")
            return ReconciliationResult(503, "retry", event.event_id, "ledger store unavailable")
        except Exception as e:
            session.rollback()
            logger.exception(f"❌ WEBHOOK_UNEXPECTED_ERROR: event_id={event.event_id}: {e}")
            return ReconciliationResult(500, "error", event.event_id, "internal error")

        return ReconciliationResult(200, "completed", event.event_id, outcome)

    @classmethod
    def _apply(cls, session: Session, event: PaymentEvent) -> str:
        event_type = event.event_type
        data = event.data

        if event_type in FAILED_PAYMENT_EVENT_TYPES:
            account = cls._resolve_account(session, data)
            notification_service.emit(
                session,
                account.trade_id,
                "payment.failed",
                {"escrow_id": account.id, "reference": data.get("reference"), "event_id": event.event_id},
            )
            logger.warning(f"⚠️ PAYMENT_FAILED: escrow={account.id} trade={account.trade_id} event={event.event_id}")
            return "notified"

        if event_type in HOLD_EVENT_TYPES:
            operation = EscrowSettlementEngine.hold
        elif event_type in RELEASE_EVENT_TYPES:
            operation = EscrowSettlementEngine.release
        elif event_type in REFUND_EVENT_TYPES:
            operation = EscrowSettlementEngine.refund
        else:
            logger.info(f"ℹ️ WEBHOOK_IGNORED: event_id={event.event_id} type={event_type}")
            return "ignored"

        if "amount" not in data:
            raise ValidationError(f"Event {event.event_id} has no amount")
        _require_optional_str(data, "currency")
        _require_optional_str(data, "reference")

        account = cls._resolve_account(session, data)
        result = operation(
            session,
            account.id,
            data["amount"],
            external_ref=data.get("reference") or event.event_id,
            caused_by=EscrowEventCause.WEBHOOK,
            actor_id=Config.PAYMENT_PROVIDER_NAME,
            currency=data.get("currency"),
        )

        trade_status = TradeLifecycleService.sync_trade_with_escrow(session, result.account)
        outcome = f"{result.event.event_type} {result.event.amount} applied; escrow {result.account.status}"
        if trade_status is not None:
            outcome += f"; trade {trade_status.value}"
        return outcome

    @classmethod
    def _resolve_account(cls, session: Session, data: Dict[str, Any]):
        escrow_id = data.get("escrow_id")
        trade_id = data.get("trade_id")
        try:
            if escrow_id is not None:
                return lock_escrow(session, escrow_id=int(escrow_id))
            if trade_id is None:
                raise ValidationError("Event data must reference escrow_id or trade_id")
            trade_id = int(trade_id)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid escrow_id/trade_id: {escrow_id!r}/{trade_id!r}")

        try:
            return lock_escrow(session, trade_id=trade_id)
        except EscrowNotFound:
            # The escrow opens when the trade is contracted; a payment for a
            # trade still in negotiation is applied once that happens
            trade = session.get(Trade, trade_id)
            if trade is not None and not is_terminal(TradeStatus(trade.status)):
                raise EventNotYetApplicable(
                    f"Trade {trade_id} has no escrow account yet (status {trade.status})",
                    details={"trade_id": trade_id, "trade_status": trade.status},
                )
            raise


def _require_optional_str(data: Dict[str, Any], key: str) -> None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"Event field '{key}' must be a string, got {type(value).__name__}")
