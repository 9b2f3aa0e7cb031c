"""Member-facing membership and checkout API (JSON, session cookie auth)."""
# ruff: noqa: B008

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.dependencies import get_current_user
from src.db.engine import get_session
from src.membership.service import membership_service
from src.models.user import User
from src.payments.checkout import ERR_PROVIDER, CheckoutResult, CheckoutService, checkout_service
from src.schemas.membership import (
    CaptureOrderRequest,
    CaptureOrderResponse,
    CreateOrderResponse,
    MembershipStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["membership"])


def get_checkout_service() -> CheckoutService:
    return checkout_service


def _raise_for(result: CheckoutResult) -> None:
    if not result.success:
        raise HTTPException(status_code=result.status_code, detail=result.error)


@router.get("/api/membership/status", response_model=MembershipStatusResponse)
async def membership_status(user: User = Depends(get_current_user)) -> MembershipStatusResponse:
    """Polled by the client after the PayPal redirect."""
    summary = membership_service.summarize(user)
    return MembershipStatusResponse(
        system_state=summary.system_state,
        italian_label=summary.italian_label,
        membership_number=summary.membership_number,
        profile_complete=summary.profile_complete,
        can_purchase=summary.can_purchase,
    )


@router.post("/api/payments/create-order", response_model=CreateOrderResponse)
async def create_order(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> CreateOrderResponse:
    try:
        result = await checkout.create_order(db, user)
    except Exception as exc:
        logger.exception("Order creation failed for user %s", user.id)
        raise HTTPException(status_code=500, detail=ERR_PROVIDER) from exc
    _raise_for(result)
    return CreateOrderResponse(
        order_id=result.order_id,
        approval_url=result.approval_url,
        membership_id=result.membership_id,
    )


@router.post("/api/payments/capture-order", response_model=CaptureOrderResponse)
async def capture_order(
    body: CaptureOrderRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> CaptureOrderResponse:
    try:
        result = await checkout.capture_order(db, user, body.order_id)
    except Exception as exc:
        logger.exception("Capture failed for order %s", body.order_id)
        raise HTTPException(status_code=500, detail=ERR_PROVIDER) from exc
    _raise_for(result)
    return CaptureOrderResponse(
        success=True,
        already_captured=result.already_captured,
        membership_id=result.membership_id,
    )


@router.post("/api/payments/cancel-order")
async def cancel_order(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> dict:
    result = await checkout.cancel_order(db, user)
    if result.membership_id is None:
        return {"success": True, "message": "Nessun pagamento in corso"}
    return {"success": True}
