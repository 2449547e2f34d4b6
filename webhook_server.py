"""
Trade Settlement Engine - HTTP server
FastAPI application exposing the payment webhook, the admin action surface
and the trade request handlers.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from routes.admin_routes import router as admin_router
from routes.payment_webhook import router as payment_webhook_router
from routes.trade_routes import router as trade_router

logger = logging.getLogger(__name__)

_startup_timestamp = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: log configuration and make sure the ledger schema exists
    Shutdown: nothing to clean up (sessions are request-scoped)
    """
    global _startup_timestamp
    Config.log_environment_config()
    if not Config.IS_PRODUCTION:
        # Production schema is managed by migrations
        create_tables()
    _startup_timestamp = time.time()
    logger.info("✅ Trade Settlement Engine started")

    yield

    logger.info("🔄 Trade Settlement Engine shutting down...")


app = FastAPI(
    title="Trade Settlement Engine",
    description="Trade lifecycle and escrow settlement with exactly-once payment webhook reconciliation",
    lifespan=lifespan,
)

app.include_router(payment_webhook_router)
app.include_router(admin_router)
app.include_router(trade_router)


@app.get("/health")
def health_check():
    """Health check endpoint: ledger store connectivity"""
    if not test_connection():
        return JSONResponse(
            content={"status": "unhealthy", "service": "trade-settlement-engine", "database": "unreachable"},
            status_code=503,
        )

    uptime = time.time() - _startup_timestamp if _startup_timestamp else 0
    return {
        "status": "healthy",
        "service": "trade-settlement-engine",
        "database": "ok",
        "uptime_seconds": round(uptime, 2),
    }
