"""Configuration management for the Trade Settlement Engine"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env"))

logger = logging.getLogger(__name__)


def _validate_percentage(env_var: str, default: str, min_val: str, max_val: str) -> Decimal:
    """Read a percentage from the environment with bounds checking"""
    raw = os.getenv(env_var, default)
    try:
        value = Decimal(raw)
    except Exception as e:
        logger.error(f"❌ Invalid {env_var} value '{raw}': {e}. Using default {default}%")
        return Decimal(default)

    if value < Decimal(min_val) or value > Decimal(max_val):
        logger.error(
            f"❌ {env_var}={value}% outside [{min_val}%, {max_val}%]. Using default {default}%"
        )
        return Decimal(default)
    return value


def _int_env(env_var: str, default: int) -> int:
    try:
        return int(os.getenv(env_var, str(default)))
    except ValueError:
        logger.error(f"❌ Invalid integer for {env_var}. Using default {default}")
        return default


def _float_env(env_var: str, default: float) -> float:
    try:
        return float(os.getenv(env_var, str(default)))
    except ValueError:
        logger.error(f"❌ Invalid number for {env_var}. Using default {default}")
        return default


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database configuration
    # Production must point at PostgreSQL; development falls back to a local SQLite file
    DATABASE_URL = os.getenv("DATABASE_URL") or (
        None if IS_PRODUCTION else "sqlite:///./trade_settlement.db"
    )
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"
    DATABASE_POOL_SIZE = _int_env("DATABASE_POOL_SIZE", 7)
    DATABASE_MAX_OVERFLOW = _int_env("DATABASE_MAX_OVERFLOW", 15)

    # Payment provider webhook authentication
    PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")
    PAYMENT_WEBHOOK_SIGNATURE_HEADER = os.getenv(
        "PAYMENT_WEBHOOK_SIGNATURE_HEADER", "X-Payment-Signature"
    )
    PAYMENT_PROVIDER_NAME = os.getenv("PAYMENT_PROVIDER_NAME", "payment_provider")

    # Admin action surface
    ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

    # Escrow configuration
    ESCROW_FEE_PERCENTAGE = _validate_percentage("ESCROW_FEE_PERCENTAGE", "8.0", "0", "20.0")
    MONEY_DECIMAL_PLACES = _int_env("MONEY_DECIMAL_PLACES", 8)

    # Readiness signal providers (trust registry, compliance, logistics feed)
    TRUST_SIGNAL_URL = os.getenv("TRUST_SIGNAL_URL")
    COMPLIANCE_SIGNAL_URL = os.getenv("COMPLIANCE_SIGNAL_URL")
    LOGISTICS_SIGNAL_URL = os.getenv("LOGISTICS_SIGNAL_URL")
    SIGNAL_PROVIDER_TIMEOUT_SECONDS = _float_env("SIGNAL_PROVIDER_TIMEOUT_SECONDS", 2.0)
    READINESS_UNKNOWN_SIGNAL_SCORE = _int_env("READINESS_UNKNOWN_SIGNAL_SCORE", 0)
    SIGNAL_CIRCUIT_FAILURE_THRESHOLD = _int_env("SIGNAL_CIRCUIT_FAILURE_THRESHOLD", 3)
    SIGNAL_CIRCUIT_RECOVERY_SECONDS = _float_env("SIGNAL_CIRCUIT_RECOVERY_SECONDS", 30.0)

    # Readiness thresholds
    READINESS_READY_THRESHOLD = _int_env("READINESS_READY_THRESHOLD", 80)
    READINESS_WARNING_THRESHOLD = _int_env("READINESS_WARNING_THRESHOLD", 60)
    TRUST_BLOCKER_THRESHOLD = _int_env("TRUST_BLOCKER_THRESHOLD", 60)
    LOGISTICS_BLOCKER_THRESHOLD = _int_env("LOGISTICS_BLOCKER_THRESHOLD", 60)

    # Outbound notifications (best-effort, fire-and-forget)
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
    NOTIFICATION_TIMEOUT_SECONDS = _float_env("NOTIFICATION_TIMEOUT_SECONDS", 5.0)
    NOTIFICATION_MAX_WORKERS = _int_env("NOTIFICATION_MAX_WORKERS", 4)

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging (never logs secrets)"""
        logger.info("🔧 Trade Settlement Engine configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        if Config.DATABASE_URL:
            dialect = Config.DATABASE_URL.split(":", 1)[0]
            logger.info(f"   Database dialect: {dialect}")
        else:
            logger.error("   ❌ DATABASE_URL not configured!")
        logger.info(f"   Escrow fee: {Config.ESCROW_FEE_PERCENTAGE}%")
        logger.info(f"   Signal provider timeout: {Config.SIGNAL_PROVIDER_TIMEOUT_SECONDS}s")

        if Config.PAYMENT_WEBHOOK_SECRET:
            logger.info("   PAYMENT_WEBHOOK_SECRET: ✅ Configured")
        elif Config.IS_PRODUCTION:
            logger.critical("🚨 PRODUCTION_SECURITY_RISK: PAYMENT_WEBHOOK_SECRET not configured!")
        else:
            logger.warning("⚠️ PAYMENT_WEBHOOK_SECRET not configured - all payment webhooks will be rejected")

        if not Config.ADMIN_API_TOKEN:
            logger.warning("⚠️ ADMIN_API_TOKEN not configured - admin actions are disabled")

        for name in ("TRUST_SIGNAL_URL", "COMPLIANCE_SIGNAL_URL", "LOGISTICS_SIGNAL_URL"):
            state = "✅ Configured" if getattr(Config, name) else "not configured (default score)"
            logger.info(f"   {name}: {state}")
