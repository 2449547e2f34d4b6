"""
Notification delivery tests
Delivery follows the commit, and a failing sink never reaches the ledger
operation that emitted the notification.
"""

import logging
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from models import EscrowEventCause
from services.escrow_settlement_engine import EscrowSettlementEngine
from services.notification_service import (
    HttpNotificationSink,
    NotificationService,
    TradeNotification,
    notification_service,
)
from utils.atomic_transactions import atomic_transaction


class FailingSink:
    def __init__(self):
        self.attempts = 0

    def send(self, notification):
        self.attempts += 1
        raise ConnectionError("notification endpoint down")


class TestFailingSink:

    def test_release_commits_when_sink_raises(self, db_session, funded_trade, caplog):
        sink = FailingSink()
        notification_service.configure(sink=sink)
        escrow_id = funded_trade.escrow_account.id

        with caplog.at_level(logging.WARNING, logger="services.notification_service"):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.release(
                    db_session, escrow_id, "1000", caused_by=EscrowEventCause.ADMIN, actor_id="admin-1"
                )

        assert sink.attempts == 1
        db_session.expire_all()
        account = funded_trade.escrow_account
        assert account.held_amount == Decimal("0")
        assert account.released_amount == Decimal("1000")
        assert "NOTIFICATION_FAILED" in caplog.text
        assert f"trade={funded_trade.id}" in caplog.text

    def test_rolled_back_transaction_sends_nothing(self, db_session, funded_trade, notifications):
        escrow_id = funded_trade.escrow_account.id
        before = len(notifications.sent)

        with pytest.raises(RuntimeError):
            with atomic_transaction(db_session):
                EscrowSettlementEngine.release(db_session, escrow_id, "400", caused_by=EscrowEventCause.ADMIN)
                raise RuntimeError("abort")

        assert len(notifications.sent) == before
        db_session.expire_all()
        assert funded_trade.escrow_account.held_amount == Decimal("1000")


class TestHttpNotificationSink:

    def test_posts_notification_json(self):
        sink = HttpNotificationSink("https://notify.example.test/trades", timeout=3)
        notification = TradeNotification(trade_id=7, event_type="escrow.release", payload={"amount": "10"})

        with patch("services.notification_service.requests.post") as post:
            sink.send(notification)

        post.assert_called_once_with(
            "https://notify.example.test/trades", json=notification.to_dict(), timeout=3
        )
        post.return_value.raise_for_status.assert_called_once()

    def test_http_error_is_logged_not_raised(self, caplog):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("502 Server Error: Bad Gateway")
        service = NotificationService(sink=HttpNotificationSink("https://notify.example.test/trades"), inline=True)

        with patch("services.notification_service.requests.post", return_value=response) as post:
            with caplog.at_level(logging.WARNING, logger="services.notification_service"):
                service.dispatch([TradeNotification(trade_id=7, event_type="trade.settled")])

        assert post.call_count == 1
        assert "NOTIFICATION_FAILED: trade=7 event=trade.settled" in caplog.text
        assert "502" in caplog.text

    def test_timeout_is_logged_not_raised(self, caplog):
        service = NotificationService(sink=HttpNotificationSink("https://notify.example.test/trades"), inline=True)

        with patch("services.notification_service.requests.post", side_effect=requests.Timeout("timed out")):
            with caplog.at_level(logging.WARNING, logger="services.notification_service"):
                service.dispatch([TradeNotification(trade_id=8, event_type="escrow.hold")])

        assert "NOTIFICATION_FAILED: trade=8 event=escrow.hold" in caplog.text
