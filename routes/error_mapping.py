"""
Error taxonomy -> HTTP mapping shared by the API routers
"""

import logging

from fastapi import HTTPException

from utils.exceptions import (
    ConflictError,
    DisputeNotFound,
    EscrowNotFound,
    FatalError,
    InvariantViolation,
    TradeEngineError,
    TradeNotFound,
    UnauthorizedActor,
    UpstreamUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

NOT_FOUND_ERRORS = (TradeNotFound, EscrowNotFound, DisputeNotFound)


def status_code_for(error: TradeEngineError) -> int:
    if isinstance(error, NOT_FOUND_ERRORS):
        return 404
    if isinstance(error, UnauthorizedActor):
        return 403
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, ConflictError):
        return 409
    if isinstance(error, InvariantViolation):
        return 422
    if isinstance(error, (FatalError, UpstreamUnavailable)):
        return 503
    return 500


def to_http_exception(error: TradeEngineError) -> HTTPException:
    status_code = status_code_for(error)
    if isinstance(error, InvariantViolation):
        logger.error(f"🚨 INVARIANT_VIOLATION surfaced to caller: {error.code} {error.message} {error.details}")
    elif status_code >= 500:
        logger.error(f"❌ {error.code}: {error.message}")
    return HTTPException(status_code=status_code, detail=error.to_dict())
