"""FastAPI application entry point.

Usage:
    python -m src.main

Serves the member JSON API, the PayPal webhook and the admin dashboard.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from src.admin.events import emit, start_event_system, stop_event_system, subscribe
from src.admin.queries import check_system_health
from src.admin.web import router as admin_router
from src.api.auth import router as auth_router
from src.api.membership import router as membership_router
from src.api.profile import router as profile_router
from src.api.webhooks import router as webhooks_router
from src.config import settings
from src.db.engine import db_lifespan
from src.logging_config import configure_logging
from src.schemas.events import EventType, SystemEvent
from src.security.audit import audit_on_event

# ── Logging setup ────────────────────────────────────────────────────

configure_logging(settings.log_level)

logger = logging.getLogger(__name__)

# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting %s (env=%s)", settings.association.association_name, settings.environment)

    # 1. Database
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Event system
        await start_event_system()
        logger.info("Event system started")

        # 3. Audit logging, always active (global subscriber)
        subscribe(audit_on_event)
        logger.info("Audit logging subscriber registered")

        if not settings.security.jwt_secret:
            logger.warning("JWT_SECRET not set: magic links and sessions disabled")
        if not settings.paypal.paypal_webhook_id:
            logger.warning("PAYPAL_WEBHOOK_ID not set: every webhook will be rejected")

        await emit(SystemEvent(event_type=EventType.SYSTEM_STARTUP, source_module="main"))

        try:
            yield
        finally:
            logger.info("Shutting down...")
            await emit(SystemEvent(event_type=EventType.SYSTEM_SHUTDOWN, source_module="main"))
            await stop_event_system()
            logger.info("Event system stopped")

    logger.info("Shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="Tesseramento API",
    description="Membership registration, payments and card numbers for a cultural association",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(auth_router)
app.include_router(membership_router)
app.include_router(profile_router)
app.include_router(webhooks_router)
app.include_router(admin_router)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint with database and Redis status."""
    checks = await check_system_health()
    healthy = all(c.get("status") == "ok" for c in checks.values())
    return {
        "status": "ok" if healthy else "degraded",
        "environment": settings.environment,
        "association": settings.association.association_name,
        "checks": checks,
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
