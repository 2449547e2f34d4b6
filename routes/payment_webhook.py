"""
Payment Provider Webhook Routes
Signed provider events -> webhook reconciler -> escrow ledger
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from config import Config
from services.webhook_reconciler import WebhookReconciler, parse_envelope
from services.webhook_security_service import WebhookSecurityService
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["payments"])


@router.post("/payments")
async def handle_payment_webhook(request: Request):
    """
    Handle payment provider webhooks

    401 bad signature (nothing recorded), 400 malformed envelope,
    200 completed/duplicate/failed, 503 retryable (provider redelivers)
    """
    # Get raw body for signature validation
    raw_body = await request.body()

    validation_result = WebhookSecurityService.validate_payment_webhook(
        request=request,
        body=raw_body,
        webhook_secret=Config.PAYMENT_WEBHOOK_SECRET,
        signature_header=Config.PAYMENT_WEBHOOK_SIGNATURE_HEADER,
    )
    if not validation_result.get("valid"):
        logger.error(f"Payment webhook rejected: {validation_result.get('error')}")
        raise HTTPException(status_code=401, detail=validation_result.get("error"))

    try:
        event = parse_envelope(raw_body)
    except ValidationError as e:
        logger.warning(f"Payment webhook rejected: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)

    # Ledger work is blocking database I/O; keep it off the event loop
    result = await run_in_threadpool(WebhookReconciler.process_event, event)
    return JSONResponse(content=result.to_dict(), status_code=result.http_status)
