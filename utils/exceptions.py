"""
Error taxonomy for the trade settlement core

ValidationError     - bad input, no state change
ConflictError       - concurrent modification or duplicate; safe to retry or ignore
InvariantViolation  - ledger sums would break; surfaced, never auto-corrected
UpstreamUnavailable - signal provider timeout; callers degrade
FatalError          - ledger store unreachable; fails the whole request
"""

from typing import Any, Dict, Optional


class TradeEngineError(Exception):
    """Base class for all trade engine errors"""

    code = "trade_engine_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


# ============================================================================
# VALIDATION
# ============================================================================

class ValidationError(TradeEngineError):
    code = "validation_error"


class InvalidTransition(ValidationError):
    code = "invalid_transition"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class EscrowAlreadyClosed(ValidationError):
    code = "escrow_already_closed"


class NothingToArbitrate(ValidationError):
    code = "nothing_to_arbitrate"


class UnauthorizedActor(ValidationError):
    code = "unauthorized_actor"


class TradeNotFound(ValidationError):
    code = "trade_not_found"


class EscrowNotFound(ValidationError):
    code = "escrow_not_found"


class DisputeNotFound(ValidationError):
    code = "dispute_not_found"


# ============================================================================
# CONFLICTS
# ============================================================================

class ConflictError(TradeEngineError):
    code = "conflict"


class ConcurrentModificationConflict(ConflictError):
    code = "concurrent_modification_conflict"
    retryable = True


class DuplicateEvent(ConflictError):
    code = "duplicate_event"


class DisputeAlreadyOpen(ConflictError):
    code = "dispute_already_open"


class EscrowFrozen(ConflictError):
    code = "escrow_frozen"


class EventNotYetApplicable(ConflictError):
    """An external event arrived before the event it depends on (e.g. release before hold)"""

    code = "event_not_yet_applicable"
    retryable = True


# ============================================================================
# INVARIANTS
# ============================================================================

class InvariantViolation(TradeEngineError):
    code = "invariant_violation"


class InsufficientHeldFunds(InvariantViolation):
    code = "insufficient_held_funds"


class LedgerMismatch(InvariantViolation):
    code = "ledger_mismatch"


# ============================================================================
# INFRASTRUCTURE
# ============================================================================

class UpstreamUnavailable(TradeEngineError):
    code = "upstream_unavailable"
    retryable = True


class FatalError(TradeEngineError):
    code = "fatal"
    retryable = True
