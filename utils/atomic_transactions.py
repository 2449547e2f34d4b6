"""Atomic transaction utilities for ledger operations and admin actions"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import SessionLocal
from models import EscrowAccount, Trade
from utils.exceptions import EscrowNotFound, FatalError, TradeNotFound

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.
    Every ledger mutation and the trade transition it triggers commit together
    or not at all.

    When a session is provided, nested use is tracked and only the outermost
    block commits. Ledger store outages surface as FatalError.
    """
    session_provided = session is not None
    if not session_provided:
        session = SessionLocal()
        logger.debug("Created new session for atomic transaction")
        try:
            yield session
            session.commit()
            logger.debug("Atomic transaction committed successfully")
        except OperationalError as e:
            session.rollback()
            logger.critical(f"🚨 LEDGER_STORE_UNAVAILABLE: transaction rolled back: {e}")
            raise FatalError("Ledger store unavailable", details={"error": str(e)}) from e
        except Exception as e:
            session.rollback()
            logger.error(f"Transaction rolled back due to error: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    try:
        setattr(session, "_atomic_transaction_depth", transaction_depth + 1)
        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost transaction committed successfully")
    except OperationalError as e:
        session.rollback()
        logger.critical(f"🚨 LEDGER_STORE_UNAVAILABLE: transaction rolled back: {e}")
        raise FatalError("Ledger store unavailable", details={"error": str(e)}) from e
    except Exception as e:
        # Always rollback on error, regardless of nesting
        session.rollback()
        logger.error(f"Transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))


def lock_trade(session: Session, trade_id: int) -> Trade:
    """Load a trade with a row-level lock held until the transaction ends"""
    trade = session.execute(
        select(Trade)
        .where(Trade.id == trade_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if trade is None:
        raise TradeNotFound(f"Trade {trade_id} not found", details={"trade_id": trade_id})
    logger.debug(f"Acquired row lock for trade {trade_id}")
    return trade


def lock_escrow(
    session: Session, escrow_id: Optional[int] = None, trade_id: Optional[int] = None
) -> EscrowAccount:
    """
    Load an escrow account (by id or by trade) with a row-level lock.
    Serializes every ledger write for the account into a strict total order.
    """
    stmt = select(EscrowAccount)
    if escrow_id is not None:
        stmt = stmt.where(EscrowAccount.id == escrow_id)
    elif trade_id is not None:
        stmt = stmt.where(EscrowAccount.trade_id == trade_id)
    else:
        raise ValueError("lock_escrow requires escrow_id or trade_id")

    account = session.execute(
        stmt.with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if account is None:
        raise EscrowNotFound(
            f"Escrow account not found (escrow_id={escrow_id}, trade_id={trade_id})",
            details={"escrow_id": escrow_id, "trade_id": trade_id},
        )
    logger.debug(f"Acquired row lock for escrow {account.id}")
    return account
