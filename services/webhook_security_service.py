"""
Webhook Security Service - signature validation for payment provider webhooks
Signatures are verified before any processing; an invalid signature has no side effects.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional, Union

from fastapi import Request

logger = logging.getLogger(__name__)


def compute_signature(payload: Union[str, bytes], secret: str) -> str:
    """Hex HMAC-SHA256 of the raw payload"""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def validate_webhook_signature(payload: Union[str, bytes], signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Validate webhook signature

    Args:
        payload: The raw webhook body
        signature: The signature header, plain hex or "sha256=<hex>"
        secret: The shared secret

    Returns:
        True if signature is valid, False otherwise (including missing secret)
    """
    if not secret or not signature:
        return False

    expected_signature = compute_signature(payload, secret)
    if signature.startswith("sha256="):
        expected_signature = "sha256=" + expected_signature

    # Use secure comparison
    return hmac.compare_digest(signature, expected_signature)


class WebhookSecurityService:
    """Centralized webhook security validation service"""

    @classmethod
    def validate_payment_webhook(
        cls, request: Request, body: bytes, webhook_secret: Optional[str], signature_header: str
    ) -> Dict[str, Any]:
        """
        Validate payment provider webhook signature
        Returns: {'valid': bool, 'error': str}
        """
        client_ip = cls.get_client_ip(request)

        if not webhook_secret:
            logger.critical("🚨 PAYMENT_WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)")
            cls.log_webhook_security_event("payment", "signature", False, {"reason": "secret missing"}, client_ip)
            return {"valid": False, "error": "Webhook secret not configured"}

        signature = request.headers.get(signature_header)
        if not signature:
            cls.log_webhook_security_event("payment", "signature", False, {"reason": "missing signature"}, client_ip)
            return {"valid": False, "error": "Missing webhook signature"}

        if not validate_webhook_signature(body, signature, webhook_secret):
            cls.log_webhook_security_event("payment", "signature", False, {"reason": "invalid signature"}, client_ip)
            return {"valid": False, "error": "Invalid webhook signature"}

        cls.log_webhook_security_event("payment", "signature", True, {}, client_ip)
        return {"valid": True, "error": None}

    @classmethod
    def log_webhook_security_event(
        cls,
        provider: str,
        event_type: str,
        success: bool,
        details: Dict[str, Any],
        request_ip: Optional[str] = None,
    ) -> None:
        """Log webhook security events for audit trail"""
        if success:
            logger.info(f"Webhook security: {provider} {event_type} - SUCCESS ip={request_ip}")
        else:
            logger.warning(f"Webhook security: {provider} {event_type} - FAILED ip={request_ip}: {details}")

    @classmethod
    def get_client_ip(cls, request: Request) -> str:
        """Extract client IP address with proxy support"""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # Get first IP in case of multiple proxies
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        return request.client.host if request.client else "unknown"
