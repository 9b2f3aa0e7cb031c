"""Checkout flows behind the membership payment API.

create → (PayPal approval page) → capture, or cancel to retry.
Provider errors never reach the user verbatim.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.admin.events import emit
from src.membership.service import MembershipService, membership_service
from src.membership.settings_store import get_membership_fee
from src.membership.states import derive_state, is_profile_complete
from src.models.enums import PaymentEventType, PaymentStatus, SystemState
from src.models.membership import Membership
from src.models.user import User
from src.notifications.mailer import Mailer, mailer
from src.payments.paypal import PayPalClient, PayPalError, paypal_client
from src.payments.webhook import notify_payment_confirmed, record_payment_event
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

ERR_PROVIDER = "Errore durante il pagamento, riprova più tardi"
ERR_ORDER_NOT_FOUND = "Ordine non trovato"
ERR_NOT_COMPLETED = "Il pagamento non è stato completato"
ERR_PROFILE_INCOMPLETE = "Completa il profilo prima di procedere al pagamento"

# States that block a new order, with the message shown to the user
BLOCKING_STATES: dict[SystemState, str] = {
    SystemState.S5_ACTIVE: "Hai già una tessera attiva",
    SystemState.S4_AWAITING_NUMBER: "Il pagamento è già stato completato",
    SystemState.S2_PROCESSING_PAYMENT: "Hai già un pagamento in corso",
}


@dataclass
class CheckoutResult:
    """Outcome of a checkout step. `status_code` is the HTTP status to answer with."""

    success: bool
    status_code: int = 200
    error: str | None = None
    order_id: str | None = None
    approval_url: str | None = None
    membership_id: uuid.UUID | None = None
    already_captured: bool = False

    @classmethod
    def failure(cls, status_code: int, error: str) -> CheckoutResult:
        return cls(success=False, status_code=status_code, error=error)


class CheckoutService:
    def __init__(self, client: PayPalClient, email: Mailer, memberships: MembershipService) -> None:
        self._client = client
        self._mailer = email
        self._memberships = memberships

    async def create_order(self, db: AsyncSession, user: User) -> CheckoutResult:
        state = derive_state(user.profile, user.current_membership)
        if state in BLOCKING_STATES:
            return CheckoutResult.failure(400, BLOCKING_STATES[state])
        if not is_profile_complete(user.profile):
            return CheckoutResult.failure(400, ERR_PROFILE_INCOMPLETE)

        created = await self._memberships.create_membership_for_payment(db, user)
        if not created.success or created.membership is None:
            return CheckoutResult.failure(400, created.error or ERR_PROVIDER)
        membership = created.membership

        try:
            order = await self._client.create_order(
                str(membership.id), membership.payment_amount or 0, "Quota associativa"
            )
        except PayPalError as exc:
            logger.error("PayPal order creation failed for membership %s: %s", membership.id, exc)
            return CheckoutResult.failure(502, ERR_PROVIDER)

        await self._memberships.attach_order(db, membership, order.order_id)
        await emit(SystemEvent(
            event_type=EventType.ORDER_CREATED,
            user_id=user.id,
            membership_id=membership.id,
            data={"order_id": order.order_id, "amount": membership.payment_amount},
            source_module="payments.checkout",
        ))
        return CheckoutResult(
            success=True,
            order_id=order.order_id,
            approval_url=order.approval_url,
            membership_id=membership.id,
        )

    async def capture_order(self, db: AsyncSession, user: User, order_id: str) -> CheckoutResult:
        """Capture after the PayPal redirect. The webhook may arrive before or after."""
        result = await db.execute(
            select(Membership).where(
                Membership.payment_provider_id == order_id,
                Membership.user_id == user.id,
            )
        )
        membership = result.scalar_one_or_none()
        if membership is None:
            logger.warning("Order %s not found for user %s", order_id, user.id)
            return CheckoutResult.failure(404, ERR_ORDER_NOT_FOUND)

        if membership.payment_status == PaymentStatus.SUCCEEDED.value:
            return CheckoutResult(success=True, already_captured=True, membership_id=membership.id)

        try:
            capture = await self._client.capture_order(order_id)
        except PayPalError as exc:
            logger.error("PayPal capture failed for order %s: %s", order_id, exc)
            return CheckoutResult.failure(502, ERR_PROVIDER)

        if capture.status != "COMPLETED":
            logger.error("Capture of order %s returned status %s", order_id, capture.status)
            return CheckoutResult.failure(400, ERR_NOT_COMPLETED)

        expected = await get_membership_fee(db)
        if capture.amount != expected:
            logger.warning(
                "Amount mismatch for membership %s: captured %d, expected %d",
                membership.id,
                capture.amount,
                expected,
            )

        recorded = await record_payment_event(
            db,
            membership.id,
            PaymentEventType.CAPTURE_COMPLETED.value,
            {"order_id": order_id, "capture_id": capture.capture_id, "amount": capture.amount, "source": "api"},
            amount=capture.amount,
        )
        if not recorded:
            return CheckoutResult(success=True, already_captured=True, membership_id=membership.id)

        membership.payment_status = PaymentStatus.SUCCEEDED.value
        membership.payment_amount = capture.amount
        await db.flush()

        await emit(SystemEvent(
            event_type=EventType.PAYMENT_COMPLETED,
            user_id=user.id,
            membership_id=membership.id,
            data={"amount": capture.amount, "capture_id": capture.capture_id, "source": "api"},
            source_module="payments.checkout",
        ))
        logger.info("Order %s captured for membership %s", order_id, membership.id)
        await notify_payment_confirmed(db, self._mailer, membership, capture.amount)
        return CheckoutResult(success=True, membership_id=membership.id)

    async def cancel_order(self, db: AsyncSession, user: User) -> CheckoutResult:
        """User came back from PayPal without paying: reset so they can retry."""
        result = await db.execute(
            select(Membership)
            .where(
                Membership.user_id == user.id,
                Membership.payment_status == PaymentStatus.PENDING.value,
                Membership.payment_provider_id.is_not(None),
            )
            .order_by(Membership.created_at.desc())
            .limit(1)
        )
        membership = result.scalar_one_or_none()
        if membership is None:
            return CheckoutResult(success=True)
        await self._memberships.cancel_order(db, membership)
        logger.info("Order canceled by user %s, membership %s reset", user.id, membership.id)
        return CheckoutResult(success=True, membership_id=membership.id)


# Module-level default wiring
checkout_service = CheckoutService(paypal_client, mailer, membership_service)
