"""
Trade Settlement Engine - Ledger Store Schema
============================================

Durable schema for the trade lifecycle and escrow settlement core:
- Trades and their lifecycle status (with an append-only transition history)
- One escrow account per trade whose sums are a fold over escrow events
- Append-only escrow events (the only place money moves)
- Processed external events (webhook idempotency ledger)
- Disputes attached to trades
- Platform revenue (commission recorded at release time)
"""

from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, text
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.optimistic_locking import VersionMixin


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


MONEY = Numeric(38, 8)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TradeStatus(Enum):
    """Trade lifecycle states"""
    RFQ_CREATED = "rfq_created"
    MATCHED = "matched"
    QUOTED = "quoted"
    CONTRACTED = "contracted"
    ESCROW_FUNDED = "escrow_funded"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class TradeEventType(Enum):
    """Events that drive trade transitions"""
    MATCH = "match"
    QUOTE = "quote"
    CONTRACT = "contract"
    FUND_ESCROW = "fund_escrow"
    SHIP = "ship"
    DELIVER = "deliver"
    DISPUTE = "dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    SETTLE = "settle"
    RESUME = "resume"
    CANCEL = "cancel"


class ActorRole(Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class EscrowStatus(Enum):
    """Escrow account states, always derived from the account sums"""
    REQUIRED = "required"
    PENDING = "pending"
    HELD = "held"
    PARTIALLY_RELEASED = "partially_released"
    RELEASED = "released"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class EscrowEventType(Enum):
    """Closed money-movement vocabulary"""
    HOLD = "hold"
    RELEASE = "release"
    PARTIAL_RELEASE = "partial_release"
    REFUND = "refund"


class EscrowEventCause(Enum):
    WEBHOOK = "webhook"
    ADMIN = "admin"
    DISPUTE_RESOLUTION = "dispute_resolution"
    TRADE_TRANSITION = "trade_transition"


class ProcessedEventStatus(Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DisputeStatus(Enum):
    IN_REVIEW = "in_review"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class DisputeOutcome(Enum):
    FAVOR_BUYER = "favor_buyer"
    FAVOR_SELLER = "favor_seller"
    SPLIT = "split"


OPEN_DISPUTE_STATUSES = (DisputeStatus.IN_REVIEW.value, DisputeStatus.ESCALATED.value)
CLOSED_ESCROW_STATUSES = (
    EscrowStatus.RELEASED.value,
    EscrowStatus.REFUNDED.value,
    EscrowStatus.CANCELLED.value,
)


def _in_clause(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class Trade(VersionMixin, Base):
    """A negotiated commercial transaction between a buyer and a seller"""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    status = Column(String(20), default=TradeStatus.RFQ_CREATED.value, nullable=False)
    currency = Column(String(10), nullable=False)
    agreed_amount = Column(MONEY, nullable=False)
    trade_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    escrow_account = relationship("EscrowAccount", back_populates="trade", uselist=False)
    disputes = relationship("Dispute", back_populates="trade", order_by="Dispute.id")
    history = relationship(
        "TradeStatusHistory", back_populates="trade", order_by="TradeStatusHistory.id"
    )

    __table_args__ = (
        CheckConstraint(_in_clause("status", TradeStatus), name="ck_trade_status_valid"),
        CheckConstraint("agreed_amount > 0", name="ck_trade_amount_positive"),
        Index("ix_trades_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<Trade(id={self.id}, status={self.status}, version={self.version})>"


class TradeStatusHistory(Base):
    """Append-only audit trail of executed trade transitions (hash-chained per trade)"""
    __tablename__ = "trade_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_id = Column(Integer, ForeignKey("trades.id"), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    event = Column(String(30), nullable=False)
    actor_id = Column(String(64), nullable=True)
    actor_role = Column(String(20), nullable=False)
    version = Column(Integer, nullable=False)
    audit_hash = Column(String(64), nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    trade = relationship("Trade", back_populates="history")

    __table_args__ = (
        Index("ix_trade_status_history_trade", "trade_id", "id"),
    )

    def __repr__(self):
        return f"<TradeStatusHistory(trade_id={self.trade_id}, {self.from_status} -> {self.to_status})>"


class EscrowAccount(VersionMixin, Base):
    """Escrow account, one-to-one with a trade"""
    __tablename__ = "escrow_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_id = Column(Integer, ForeignKey("trades.id"), nullable=False, unique=True)
    status = Column(String(20), default=EscrowStatus.REQUIRED.value, nullable=False)
    currency = Column(String(10), nullable=False)

    # required_amount is what must be funded; total_amount is what has been funded
    required_amount = Column(MONEY, nullable=False)
    total_amount = Column(MONEY, default=0, nullable=False)
    held_amount = Column(MONEY, default=0, nullable=False)
    released_amount = Column(MONEY, default=0, nullable=False)
    refunded_amount = Column(MONEY, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    trade = relationship("Trade", back_populates="escrow_account")
    events = relationship("EscrowEvent", back_populates="escrow", order_by="EscrowEvent.id")

    __table_args__ = (
        CheckConstraint(_in_clause("status", EscrowStatus), name="ck_escrow_status_valid"),
        CheckConstraint("required_amount > 0", name="ck_escrow_required_positive"),
        CheckConstraint("held_amount >= 0", name="ck_escrow_held_non_negative"),
        CheckConstraint("released_amount >= 0", name="ck_escrow_released_non_negative"),
        CheckConstraint("refunded_amount >= 0", name="ck_escrow_refunded_non_negative"),
        # Exact NUMERIC comparison is only reliable on PostgreSQL
        CheckConstraint(
            "held_amount + released_amount + refunded_amount = total_amount",
            name="ck_escrow_sum_invariant",
        ).ddl_if(dialect="postgresql"),
        CheckConstraint(
            "total_amount <= required_amount", name="ck_escrow_not_overfunded"
        ).ddl_if(dialect="postgresql"),
    )

    def __repr__(self):
        return (
            f"<EscrowAccount(id={self.id}, trade_id={self.trade_id}, status={self.status}, "
            f"held={self.held_amount}, released={self.released_amount}, refunded={self.refunded_amount})>"
        )


class EscrowEvent(Base):
    """Immutable escrow ledger fact"""
    __tablename__ = "escrow_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(Integer, ForeignKey("escrow_accounts.id"), nullable=False)
    event_type = Column(String(20), nullable=False)
    amount = Column(MONEY, nullable=False)
    currency = Column(String(10), nullable=False)
    external_ref = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)
    caused_by = Column(String(30), nullable=False)
    actor_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    escrow = relationship("EscrowAccount", back_populates="events")

    __table_args__ = (
        CheckConstraint(_in_clause("event_type", EscrowEventType), name="ck_escrow_event_type_valid"),
        CheckConstraint(_in_clause("caused_by", EscrowEventCause), name="ck_escrow_event_cause_valid"),
        CheckConstraint("amount > 0", name="ck_escrow_event_amount_positive"),
        Index("ix_escrow_events_escrow_order", "escrow_id", "id"),
        Index("ix_escrow_events_external_ref", "external_ref"),
    )

    def __repr__(self):
        return f"<EscrowEvent(escrow_id={self.escrow_id}, type={self.event_type}, amount={self.amount})>"


class ProcessedExternalEvent(Base):
    """Webhook idempotency ledger; the unique event_id is the deduplication primitive"""
    __tablename__ = "processed_external_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    status = Column(String(20), default=ProcessedEventStatus.PROCESSING.value, nullable=False)
    processing_result = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_processed_external_events_event_id"),
        CheckConstraint(_in_clause("status", ProcessedEventStatus), name="ck_processed_event_status_valid"),
        Index("ix_processed_external_events_status", "status"),
    )

    def __repr__(self):
        return f"<ProcessedExternalEvent(event_id={self.event_id}, status={self.status})>"


class Dispute(Base):
    """Dispute attached to a trade; at most one open per trade"""
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_id = Column(Integer, ForeignKey("trades.id"), nullable=False)
    raised_by = Column(String(64), nullable=False)
    against = Column(String(64), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(20), default=DisputeStatus.IN_REVIEW.value, nullable=False)
    outcome = Column(String(20), nullable=True)
    resolution_note = Column(Text, nullable=True)
    prior_trade_status = Column(String(20), nullable=False)
    resolved_by = Column(String(64), nullable=True)
    released_amount = Column(MONEY, nullable=True)
    refunded_amount = Column(MONEY, nullable=True)

    opened_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    escalated_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    trade = relationship("Trade", back_populates="disputes")

    __table_args__ = (
        CheckConstraint(_in_clause("status", DisputeStatus), name="ck_dispute_status_valid"),
        CheckConstraint(
            f"outcome IS NULL OR {_in_clause('outcome', DisputeOutcome)}",
            name="ck_dispute_outcome_valid",
        ),
        Index(
            "uq_disputes_one_open_per_trade",
            "trade_id",
            unique=True,
            postgresql_where=text("status IN ('in_review', 'escalated')"),
            sqlite_where=text("status IN ('in_review', 'escalated')"),
        ),
        Index("ix_disputes_status", "status"),
    )

    def __repr__(self):
        return f"<Dispute(id={self.id}, trade_id={self.trade_id}, status={self.status})>"


class PlatformRevenue(Base):
    """Commission recorded alongside release events (not part of the escrow sums)"""
    __tablename__ = "platform_revenue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(Integer, ForeignKey("escrow_accounts.id"), nullable=False)
    escrow_event_id = Column(Integer, ForeignKey("escrow_events.id"), nullable=False, unique=True)
    fee_amount = Column(MONEY, nullable=False)
    fee_currency = Column(String(10), nullable=False)
    fee_percentage = Column(Numeric(10, 4), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_platform_revenue_escrow", "escrow_id"),
    )

    def __repr__(self):
        return f"<PlatformRevenue(escrow_id={self.escrow_id}, fee_amount={self.fee_amount})>"
