"""
Shared fixtures for the trade settlement test suite

1. In-memory SQLite ledger store, schema recreated for every test
2. Inline notification delivery into a recording sink
3. Actor contexts and trade/escrow factories for common lifecycle positions
"""

import os

# Must be set before config/database are imported anywhere
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["ESCROW_FEE_PERCENTAGE"] = "8.0"

import json
import logging
from decimal import Decimal
from typing import List

import pytest

from database import SessionLocal, create_tables, drop_tables
from models import ActorRole, EscrowEventCause, TradeEventType
from services.escrow_settlement_engine import EscrowSettlementEngine
from services.notification_service import notification_service
from services.trade_lifecycle_service import ActorContext, TradeLifecycleService
from services.webhook_security_service import compute_signature
from utils.atomic_transactions import atomic_transaction

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"
WEBHOOK_SECRET = os.environ["PAYMENT_WEBHOOK_SECRET"]
ADMIN_TOKEN = os.environ["ADMIN_API_TOKEN"]


class RecordingSink:
    """Notification sink that keeps everything it is sent"""

    def __init__(self):
        self.sent: List = []

    def send(self, notification):
        self.sent.append(notification)

    def event_types(self, trade_id=None) -> List[str]:
        return [
            n.event_type for n in self.sent
            if trade_id is None or n.trade_id == trade_id
        ]


@pytest.fixture(autouse=True)
def ledger_schema():
    """Fresh schema per test"""
    drop_tables()
    create_tables()
    yield
    drop_tables()


@pytest.fixture(autouse=True)
def notifications():
    """Deliver notifications synchronously into a recording sink"""
    sink = RecordingSink()
    previous_sink, previous_inline = notification_service.sink, notification_service.inline
    notification_service.configure(sink=sink, inline=True)
    yield sink
    notification_service.configure(sink=previous_sink, inline=previous_inline)


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def buyer():
    return ActorContext(actor_id=BUYER_ID, role=ActorRole.BUYER)


@pytest.fixture
def seller():
    return ActorContext(actor_id=SELLER_ID, role=ActorRole.SELLER)


@pytest.fixture
def admin():
    return ActorContext(actor_id="admin-1", role=ActorRole.ADMIN)


@pytest.fixture
def create_trade(db_session):
    """Factory: committed trade, contracted (direct checkout) unless told otherwise"""

    def _create(amount="1000", currency="USD", direct_checkout=True, buyer_id=BUYER_ID, seller_id=SELLER_ID):
        with atomic_transaction(db_session):
            trade = TradeLifecycleService.create_trade(
                db_session,
                buyer_id=buyer_id,
                seller_id=seller_id,
                currency=currency,
                agreed_amount=amount,
                direct_checkout=direct_checkout,
            )
        return trade

    return _create


@pytest.fixture
def fund_trade(db_session):
    """Hold `amount` (default: the full agreed amount) as the payment provider would"""

    def _fund(trade, amount=None):
        with atomic_transaction(db_session):
            account = trade.escrow_account
            result = EscrowSettlementEngine.hold(
                db_session,
                account.id,
                amount if amount is not None else trade.agreed_amount,
                external_ref=f"charge-{trade.id}",
                caused_by=EscrowEventCause.WEBHOOK,
                actor_id="payment_provider",
            )
            TradeLifecycleService.sync_trade_with_escrow(db_session, result.account)
        return result.account

    return _fund


@pytest.fixture
def advance(db_session):
    """Drive a trade through a sequence of (event, actor) transitions"""

    def _advance(trade, *steps):
        snapshot = None
        for event, actor in steps:
            with atomic_transaction(db_session):
                snapshot = TradeLifecycleService.transition(db_session, trade.id, event, actor)
        return snapshot

    return _advance


@pytest.fixture
def funded_trade(create_trade, fund_trade):
    """Trade at escrow_funded with 1000 USD held"""
    trade = create_trade(amount="1000")
    fund_trade(trade)
    return trade


@pytest.fixture
def delivered_trade(funded_trade, advance, seller):
    advance(
        funded_trade,
        (TradeEventType.SHIP, seller),
        (TradeEventType.DELIVER, seller),
    )
    return funded_trade


def signed_payload(payload: dict):
    """Raw body plus the signature header for a provider event"""
    body = json.dumps(payload).encode("utf-8")
    return body, {"X-Payment-Signature": compute_signature(body, WEBHOOK_SECRET), "Content-Type": "application/json"}


@pytest.fixture
def sign():
    return signed_payload


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.00000001"))


@pytest.fixture
def as_money():
    return money
