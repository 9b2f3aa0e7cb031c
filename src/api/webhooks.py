"""PayPal webhook endpoint."""
# ruff: noqa: B008

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import get_session
from src.payments.webhook import WebhookProcessor, webhook_processor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def get_webhook_processor() -> WebhookProcessor:
    return webhook_processor


@router.post("/paypal")
async def paypal_webhook(
    request: Request,
    db: AsyncSession = Depends(get_session),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    """Any non-2xx answer makes PayPal redeliver the event later."""
    raw = await request.body()
    try:
        outcome = await processor.process(db, raw, dict(request.headers))
    except Exception:
        logger.exception("PayPal webhook error")
        await db.rollback()
        return JSONResponse({"error": "Webhook processing failed"}, status_code=500)

    if outcome.status_code >= 500:
        await db.rollback()
    return JSONResponse(outcome.body, status_code=outcome.status_code)
