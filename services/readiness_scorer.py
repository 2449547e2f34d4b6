"""
Trade Readiness Scorer
Advisory 0-100 composite of trust, compliance, financial and logistics signals.

compute_readiness() is pure: it reads a snapshot of signals and returns a
score, a status and severity-ordered blockers. Nothing here changes trade or
escrow state.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import EscrowAccount, EscrowStatus, Trade
from services.signal_providers import SignalStatus, build_default_sources
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import TradeNotFound

logger = logging.getLogger(__name__)

WEIGHTS = {
    "trust": Decimal("0.30"),
    "compliance": Decimal("0.25"),
    "financial": Decimal("0.25"),
    "logistics": Decimal("0.20"),
}

FUNDED_ESCROW_STATUSES = (
    EscrowStatus.HELD.value,
    EscrowStatus.PARTIALLY_RELEASED.value,
    EscrowStatus.RELEASED.value,
)


class ComplianceStatus(Enum):
    COMPLIANT = "compliant"
    PENDING = "pending"
    AT_RISK = "at_risk"


class ReadinessStatus(Enum):
    READY = "ready"
    WARNING = "warning"
    BLOCKED = "blocked"


class BlockerSeverity(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


SEVERITY_RANK = {BlockerSeverity.CRITICAL: 0, BlockerSeverity.HIGH: 1, BlockerSeverity.MEDIUM: 2}


@dataclass(frozen=True)
class Blocker:
    id: str
    type: str
    severity: BlockerSeverity
    title: str
    description: str
    action_required: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "action_required": self.action_required,
        }


@dataclass
class ReadinessSignals:
    """Read-only inputs to the scorer, each already normalized"""
    trust_score: int
    compliance_status: ComplianceStatus
    escrow_status: Optional[str]
    logistics_score: int
    unknown_components: List[str] = field(default_factory=list)
    stale_components: List[str] = field(default_factory=list)


@dataclass
class ReadinessSnapshot:
    score: int
    status: ReadinessStatus
    component_scores: Dict[str, int]
    blockers: List[Blocker]
    unknown_components: List[str] = field(default_factory=list)
    stale_components: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "status": self.status.value,
            "component_scores": dict(self.component_scores),
            "blockers": [b.to_dict() for b in self.blockers],
            "unknown_components": list(self.unknown_components),
            "stale_components": list(self.stale_components),
        }


def compliance_status_from_percentage(percentage: int) -> ComplianceStatus:
    """Share of required certifications verified -> compliance status"""
    if percentage >= 100:
        return ComplianceStatus.COMPLIANT
    if percentage > 0:
        return ComplianceStatus.PENDING
    return ComplianceStatus.AT_RISK


def compliance_component(status: ComplianceStatus) -> int:
    return {ComplianceStatus.COMPLIANT: 100, ComplianceStatus.PENDING: 50, ComplianceStatus.AT_RISK: 0}[status]


def financial_component(escrow_status: Optional[str]) -> int:
    if escrow_status in FUNDED_ESCROW_STATUSES:
        return 100
    if escrow_status == EscrowStatus.PENDING.value:
        return 50
    return 0


def _clamp(value: int) -> int:
    return max(0, min(100, int(value)))


def compute_readiness(signals: ReadinessSignals) -> ReadinessSnapshot:
    components = {
        "trust": _clamp(signals.trust_score),
        "compliance": compliance_component(signals.compliance_status),
        "financial": financial_component(signals.escrow_status),
        "logistics": _clamp(signals.logistics_score),
    }
    weighted = sum(Decimal(components[name]) * weight for name, weight in WEIGHTS.items())
    score = MonetaryDecimal.round_half_up(weighted)

    if score >= Config.READINESS_READY_THRESHOLD:
        status = ReadinessStatus.READY
    elif score >= Config.READINESS_WARNING_THRESHOLD:
        status = ReadinessStatus.WARNING
    else:
        status = ReadinessStatus.BLOCKED

    blockers: List[Blocker] = []
    if components["trust"] < Config.TRUST_BLOCKER_THRESHOLD:
        blockers.append(Blocker(
            id="trust-low",
            type="trust",
            severity=BlockerSeverity.HIGH,
            title="Low Trust Score",
            description="Counterparty trust score is below the recommended threshold",
            action_required="Complete verification or request additional documentation",
        ))

    if signals.compliance_status != ComplianceStatus.COMPLIANT:
        at_risk = signals.compliance_status == ComplianceStatus.AT_RISK
        blockers.append(Blocker(
            id="compliance-at-risk" if at_risk else "compliance-pending",
            type="compliance",
            severity=BlockerSeverity.CRITICAL if at_risk else BlockerSeverity.HIGH,
            title="Compliance At Risk" if at_risk else "Compliance Pending",
            description="Required compliance documents are missing or pending review",
            action_required="Upload missing documents",
        ))

    if components["financial"] == 0:
        blockers.append(Blocker(
            id="escrow-not-funded",
            type="financial",
            severity=BlockerSeverity.CRITICAL,
            title="Escrow Not Funded",
            description="Trade requires escrow funding before proceeding",
            action_required="Fund escrow account",
        ))
    elif components["financial"] < 100:
        blockers.append(Blocker(
            id="escrow-partially-funded",
            type="financial",
            severity=BlockerSeverity.HIGH,
            title="Escrow Partially Funded",
            description="Escrow has received part of the required amount",
            action_required="Complete escrow funding",
        ))

    if components["logistics"] < Config.LOGISTICS_BLOCKER_THRESHOLD:
        blockers.append(Blocker(
            id="logistics-not-ready",
            type="logistics",
            severity=BlockerSeverity.MEDIUM,
            title="Logistics Not Ready",
            description="Shipment readiness is below the recommended threshold",
            action_required="Confirm carrier booking and shipping documents",
        ))

    # sorted() is stable: equal severities keep their generation order
    blockers = sorted(blockers, key=lambda b: SEVERITY_RANK[b.severity])

    return ReadinessSnapshot(
        score=score,
        status=status,
        component_scores=components,
        blockers=blockers,
        unknown_components=list(signals.unknown_components),
        stale_components=list(signals.stale_components),
    )


class ReadinessService:
    """Collects live signals for a trade and scores them (read-only)"""

    def __init__(self, sources=None):
        self.sources = sources or build_default_sources()

    def score_trade(self, session: Session, trade_id: int) -> ReadinessSnapshot:
        trade = session.get(Trade, trade_id)
        if trade is None:
            raise TradeNotFound(f"Trade {trade_id} not found", details={"trade_id": trade_id})

        escrow_status = session.execute(
            select(EscrowAccount.status).where(EscrowAccount.trade_id == trade_id)
        ).scalar_one_or_none()

        # Signals describe the supplying company
        company_id = trade.seller_id
        readings = {name: source.read(company_id) for name, source in self.sources.items()}
        unknown = sorted(name for name, r in readings.items() if r.status == SignalStatus.UNKNOWN)
        stale = sorted(name for name, r in readings.items() if r.status == SignalStatus.STALE)

        signals = ReadinessSignals(
            trust_score=readings["trust"].score,
            compliance_status=compliance_status_from_percentage(readings["compliance"].score),
            escrow_status=escrow_status,
            logistics_score=readings["logistics"].score,
            unknown_components=unknown,
            stale_components=stale,
        )
        snapshot = compute_readiness(signals)
        logger.info(
            f"📊 READINESS: trade={trade_id} score={snapshot.score} status={snapshot.status.value} "
            f"blockers={len(snapshot.blockers)} unknown={unknown} stale={stale}"
        )
        return snapshot
