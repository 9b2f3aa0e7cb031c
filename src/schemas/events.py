"""SystemEvent schema: the event type that flows through the whole application.

Every membership, payment and admin action emits a SystemEvent. Subscribers
(currently the audit logger) consume these events asynchronously.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Authentication
    MAGIC_LINK_SENT = "auth.magic_link_sent"
    USER_LOGIN = "auth.user_login"
    RATE_LIMITED = "auth.rate_limited"

    # Payments
    ORDER_CREATED = "payment.order_created"
    ORDER_APPROVED = "payment.order_approved"
    ORDER_CANCELED = "payment.order_canceled"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    WEBHOOK_DUPLICATE = "payment.webhook_duplicate"
    WEBHOOK_REJECTED = "payment.webhook_rejected"

    # Profile
    PROFILE_UPDATED = "profile.updated"

    # Membership lifecycle
    MEMBERSHIP_CREATED = "membership.created"
    MEMBERSHIP_ACTIVATED = "membership.activated"
    MEMBERSHIP_EXPIRED = "membership.expired"
    MEMBERSHIP_CANCELED = "membership.canceled"
    MEMBERSHIP_STATUS_CHANGED = "membership.status_changed"

    # Card numbers
    CARD_RANGE_ADDED = "card.range_added"
    CARD_RANGE_DELETED = "card.range_deleted"
    CARDS_ASSIGNED = "card.batch_assigned"

    # Admin
    ADMIN_ACCESS = "admin.access"
    ADMIN_EXPORT = "admin.export"

    # Email
    EMAIL_FAILED = "email.failed"

    # System
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"


class SystemEvent(BaseModel):
    """Immutable event consumed by the audit logger."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Context (optional: not every event has a user or membership)
    user_id: uuid.UUID | None = None
    membership_id: uuid.UUID | None = None
    actor_id: str | None = None
    actor_role: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
