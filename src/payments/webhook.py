"""PayPal webhook processor.

Checks run in a fixed order: size, signature, JSON, allow-list, dispatch.
Idempotency comes from the database: each handler inserts its PaymentLog
row inside a SAVEPOINT *before* touching the membership, and the unique
keys on payment_logs turn a redelivered event into an IntegrityError, which
is answered as a duplicate no-op. Unknown orders raise
WebhookProcessingError so PayPal retries the delivery later.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.admin.events import emit
from src.models.enums import MembershipStatus, PaymentEventType, PaymentStatus
from src.models.membership import Membership, PaymentLog
from src.models.user import User
from src.notifications.mailer import EmailError, Mailer, mailer
from src.payments.paypal import PayPalClient, euros_to_cents, paypal_client
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 1024 * 1024  # 1 MiB

ALLOWED_EVENT_TYPES: frozenset[str] = frozenset({
    PaymentEventType.CHECKOUT_ORDER_APPROVED.value,
    PaymentEventType.PAYMENT_CAPTURE_COMPLETED.value,
    PaymentEventType.PAYMENT_CAPTURE_DENIED.value,
    PaymentEventType.PAYMENT_CAPTURE_DECLINED.value,
    PaymentEventType.PAYMENT_CAPTURE_REFUNDED.value,
})


class WebhookProcessingError(Exception):
    """The event is valid but cannot be applied yet (unknown order/membership)."""


@dataclass
class WebhookOutcome:
    """HTTP answer for one delivery."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)
    duplicate: bool = False

    @classmethod
    def ok(cls) -> WebhookOutcome:
        return cls(200, {"success": True})

    @classmethod
    def already_processed(cls) -> WebhookOutcome:
        return cls(200, {"duplicate": True}, duplicate=True)

    @classmethod
    def error(cls, status_code: int, message: str) -> WebhookOutcome:
        return cls(status_code, {"error": message})


async def record_payment_event(
    db: AsyncSession,
    membership_id: uuid.UUID,
    event_type: str,
    payload: dict[str, Any],
    provider_event_id: str | None = None,
    amount: int | None = None,
) -> bool:
    """Insert a PaymentLog row in a SAVEPOINT.

    Returns False when the row already exists (either unique key), leaving
    the outer transaction usable.
    """
    try:
        async with db.begin_nested():
            db.add(PaymentLog(
                membership_id=membership_id,
                event_type=event_type,
                provider_event_id=provider_event_id,
                amount=amount,
                provider_response=payload,
            ))
            await db.flush()
    except IntegrityError:
        logger.info("Payment event %s for membership %s already recorded", event_type, membership_id)
        return False
    return True


async def notify_payment_confirmed(db: AsyncSession, email: Mailer, membership: Membership, amount: int) -> None:
    """Email the payer after the first SUCCEEDED transition. Failures are logged, never raised."""
    user = await db.get(User, membership.user_id)
    if user is None:
        return
    first_name = user.profile.first_name if user.profile and user.profile.first_name else ""
    try:
        await email.send_payment_confirmation(user.email, first_name, amount)
    except EmailError as exc:
        await emit(SystemEvent(
            event_type=EventType.EMAIL_FAILED,
            user_id=user.id,
            membership_id=membership.id,
            data={"kind": "payment_confirmation", "transient": exc.is_transient},
            source_module="payments",
        ))


def _declared_length(headers: Mapping[str, str]) -> int | None:
    for key, value in headers.items():
        if key.lower() == "content-length":
            try:
                return int(value)
            except ValueError:
                return None
    return None


def _order_id_from_capture(resource: dict[str, Any]) -> str | None:
    return ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")


class WebhookProcessor:
    """Verifies and applies PayPal webhook deliveries."""

    def __init__(self, client: PayPalClient, email: Mailer) -> None:
        self._client = client
        self._mailer = email

    async def process(self, db: AsyncSession, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        declared = _declared_length(headers)
        if (declared is not None and declared > MAX_BODY_SIZE) or len(raw_body) > MAX_BODY_SIZE:
            logger.warning("Webhook payload too large (declared=%s actual=%d)", declared, len(raw_body))
            return WebhookOutcome.error(413, "Payload too large")

        try:
            event: Any = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            event = None

        try:
            verified = await self._client.verify_webhook_signature(
                dict(headers), event if event is not None else raw_body.decode("utf-8", "replace")
            )
        except Exception:
            logger.exception("Webhook signature verification failed")
            return WebhookOutcome.error(500, "Webhook processing failed")

        if not verified:
            logger.error("Invalid PayPal webhook signature")
            await emit(SystemEvent(
                event_type=EventType.WEBHOOK_REJECTED,
                data={"reason": "signature"},
                source_module="payments.webhook",
            ))
            return WebhookOutcome.error(401, "Invalid signature")

        if not isinstance(event, dict):
            return WebhookOutcome.error(400, "Invalid JSON")

        event_type = event.get("event_type")
        if event_type not in ALLOWED_EVENT_TYPES:
            logger.warning("Unexpected webhook event type: %s", event_type)
            return WebhookOutcome.error(400, "Unexpected event type")

        logger.info("Processing PayPal webhook %s (%s)", event_type, event.get("id"))
        try:
            applied = await self.dispatch(db, event)
        except WebhookProcessingError as exc:
            logger.error("Webhook %s not applied: %s", event_type, exc)
            return WebhookOutcome.error(500, "Webhook processing failed")

        if not applied:
            await emit(SystemEvent(
                event_type=EventType.WEBHOOK_DUPLICATE,
                data={"event_type": event_type, "event_id": event.get("id")},
                source_module="payments.webhook",
            ))
            return WebhookOutcome.already_processed()
        return WebhookOutcome.ok()

    async def dispatch(self, db: AsyncSession, event: dict[str, Any]) -> bool:
        """Route to the handler. Returns False for a duplicate delivery."""
        event_type = event["event_type"]
        if event_type == PaymentEventType.CHECKOUT_ORDER_APPROVED.value:
            return await self.handle_order_approved(db, event)
        if event_type == PaymentEventType.PAYMENT_CAPTURE_COMPLETED.value:
            return await self.handle_payment_completed(db, event)
        if event_type in (
            PaymentEventType.PAYMENT_CAPTURE_DENIED.value,
            PaymentEventType.PAYMENT_CAPTURE_DECLINED.value,
        ):
            return await self.handle_payment_failed(db, event)
        return await self.handle_payment_refunded(db, event)

    # ── Lookups ──────────────────────────────────────────────────────

    async def _membership_by_order(self, db: AsyncSession, order_id: str | None, event_type: str) -> Membership:
        if not order_id:
            raise WebhookProcessingError(f"No order id in {event_type}")
        result = await db.execute(
            select(Membership).where(Membership.payment_provider_id == order_id).limit(1)
        )
        membership = result.scalar_one_or_none()
        if membership is None:
            raise WebhookProcessingError(f"Membership not found for order {order_id}")
        return membership

    # ── Handlers ─────────────────────────────────────────────────────

    async def handle_order_approved(self, db: AsyncSession, event: dict[str, Any]) -> bool:
        resource = event.get("resource") or {}
        order_id = resource.get("id")
        units = resource.get("purchase_units") or [{}]
        reference = units[0].get("reference_id") if units else None
        if not order_id or not reference:
            raise WebhookProcessingError("Missing order id or reference_id in CHECKOUT.ORDER.APPROVED")

        try:
            membership_id = uuid.UUID(str(reference))
        except ValueError as exc:
            raise WebhookProcessingError(f"Invalid reference_id {reference!r}") from exc
        membership = await db.get(Membership, membership_id)
        if membership is None:
            raise WebhookProcessingError(f"Membership not found: {membership_id}")

        if not await record_payment_event(db, membership.id, event["event_type"], event, event.get("id")):
            return False

        membership.payment_provider_id = order_id
        await db.flush()
        await emit(SystemEvent(
            event_type=EventType.ORDER_APPROVED,
            user_id=membership.user_id,
            membership_id=membership.id,
            data={"order_id": order_id},
            source_module="payments.webhook",
        ))
        logger.info("Order %s approved for membership %s", order_id, membership.id)
        return True

    async def handle_payment_completed(self, db: AsyncSession, event: dict[str, Any]) -> bool:
        resource = event.get("resource") or {}
        membership = await self._membership_by_order(db, _order_id_from_capture(resource), event["event_type"])
        if membership.payment_status == PaymentStatus.SUCCEEDED.value:
            logger.info("Membership %s already paid, skipping", membership.id)
            return False

        amount = euros_to_cents((resource.get("amount") or {}).get("value"))
        if not await record_payment_event(db, membership.id, event["event_type"], event, event.get("id"), amount):
            return False

        # Status stays PENDING until a card number is assigned (S4 → S5)
        membership.payment_status = PaymentStatus.SUCCEEDED.value
        membership.payment_amount = amount
        membership.updated_by = "webhook"
        await db.flush()

        await emit(SystemEvent(
            event_type=EventType.PAYMENT_COMPLETED,
            user_id=membership.user_id,
            membership_id=membership.id,
            data={"amount": amount, "capture_id": resource.get("id")},
            source_module="payments.webhook",
        ))
        logger.info("Payment completed for membership %s (%d cents)", membership.id, amount)
        await notify_payment_confirmed(db, self._mailer, membership, amount)
        return True

    async def handle_payment_failed(self, db: AsyncSession, event: dict[str, Any]) -> bool:
        resource = event.get("resource") or {}
        membership = await self._membership_by_order(db, _order_id_from_capture(resource), event["event_type"])
        if membership.payment_status == PaymentStatus.FAILED.value:
            return False
        if not await record_payment_event(db, membership.id, event["event_type"], event, event.get("id")):
            return False

        membership.payment_status = PaymentStatus.FAILED.value
        membership.updated_by = "webhook"
        await db.flush()
        await emit(SystemEvent(
            event_type=EventType.PAYMENT_FAILED,
            user_id=membership.user_id,
            membership_id=membership.id,
            data={"event_type": event["event_type"]},
            source_module="payments.webhook",
        ))
        logger.warning("Payment failed for membership %s (%s)", membership.id, event["event_type"])
        return True

    async def handle_payment_refunded(self, db: AsyncSession, event: dict[str, Any]) -> bool:
        resource = event.get("resource") or {}
        membership = await self._membership_by_order(db, _order_id_from_capture(resource), event["event_type"])
        if membership.payment_status == PaymentStatus.CANCELED.value:
            return False
        if not await record_payment_event(db, membership.id, event["event_type"], event, event.get("id")):
            return False

        membership.payment_status = PaymentStatus.CANCELED.value
        membership.status = MembershipStatus.EXPIRED.value
        membership.updated_by = "webhook"
        await db.flush()
        await emit(SystemEvent(
            event_type=EventType.PAYMENT_REFUNDED,
            user_id=membership.user_id,
            membership_id=membership.id,
            source_module="payments.webhook",
        ))
        logger.info("Payment refunded for membership %s", membership.id)
        return True


# Module-level default wiring
webhook_processor = WebhookProcessor(paypal_client, mailer)
