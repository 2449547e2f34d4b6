"""
Database session management tests
"""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

import database
from models import Trade
from services.trade_lifecycle_service import TradeLifecycleService
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import FatalError


def _trade_count(session):
    return session.execute(select(func.count(Trade.id))).scalar_one()


class TestManagedSession:

    def test_commits_on_success(self, db_session):
        with database.managed_session() as session:
            TradeLifecycleService.create_trade(session, "buyer-1", "seller-1", "USD", "100")

        assert _trade_count(db_session) == 1

    def test_rolls_back_and_reraises(self, db_session, notifications):
        with pytest.raises(RuntimeError):
            with database.managed_session() as session:
                TradeLifecycleService.create_trade(session, "buyer-1", "seller-1", "USD", "100")
                raise RuntimeError("boom")

        assert _trade_count(db_session) == 0
        # queued notifications are discarded with the transaction
        assert notifications.sent == []


class TestConnection:

    def test_connection_check(self):
        assert database.test_connection() is True

    def test_schema_helpers_are_idempotent(self):
        assert database.create_tables() is True
        assert database.create_tables() is True


class TestAtomicTransaction:

    def test_store_outage_on_commit_is_fatal(self, db_session, notifications):
        outage = OperationalError("COMMIT", {}, Exception("server closed the connection unexpectedly"))

        with patch.object(db_session, "commit", side_effect=outage):
            with pytest.raises(FatalError) as exc_info:
                with atomic_transaction(db_session):
                    TradeLifecycleService.create_trade(db_session, "buyer-1", "seller-1", "USD", "100")

        assert exc_info.value.retryable is True
        assert exc_info.value.code == "fatal"
        assert "server closed the connection" in exc_info.value.details["error"]
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert _trade_count(db_session) == 0
        assert notifications.sent == []

    def test_owned_session_outage_rolls_back_and_closes(self):
        session = MagicMock()
        session.commit.side_effect = OperationalError("COMMIT", {}, Exception("connection refused"))

        with patch("utils.atomic_transactions.SessionLocal", return_value=session):
            with pytest.raises(FatalError):
                with atomic_transaction():
                    pass

        session.rollback.assert_called_once()
        session.close.assert_called_once()

    def test_nested_block_defers_commit_to_outermost(self, db_session):
        with patch.object(db_session, "commit", wraps=db_session.commit) as commit:
            with atomic_transaction(db_session):
                with atomic_transaction(db_session):
                    TradeLifecycleService.create_trade(db_session, "buyer-1", "seller-1", "USD", "100")
                assert commit.call_count == 0

        assert commit.call_count == 1
        assert _trade_count(db_session) == 1
