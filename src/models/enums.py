"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization; columns store the `.value`.
"""

from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Payment side of a membership."""

    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class MembershipStatus(str, Enum):
    """Lifecycle side of a membership. Rows are never hard-deleted."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class SystemState(str, Enum):
    """User-facing membership state, derived from persisted data."""

    S0_NO_MEMBERSHIP = "S0_NO_MEMBERSHIP"
    S1_PROFILE_COMPLETE = "S1_PROFILE_COMPLETE"
    S2_PROCESSING_PAYMENT = "S2_PROCESSING_PAYMENT"
    S3_PAYMENT_FAILED = "S3_PAYMENT_FAILED"
    S4_AWAITING_NUMBER = "S4_AWAITING_NUMBER"
    S5_ACTIVE = "S5_ACTIVE"
    S6_EXPIRED = "S6_EXPIRED"
    S7_CANCELED = "S7_CANCELED"


class PaymentEventType(str, Enum):
    """Payment events written to payment_logs.

    The first five are the PayPal webhook allow-list.
    """

    CHECKOUT_ORDER_APPROVED = "CHECKOUT.ORDER.APPROVED"
    PAYMENT_CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
    PAYMENT_CAPTURE_DENIED = "PAYMENT.CAPTURE.DENIED"
    PAYMENT_CAPTURE_DECLINED = "PAYMENT.CAPTURE.DECLINED"
    PAYMENT_CAPTURE_REFUNDED = "PAYMENT.CAPTURE.REFUNDED"
    CAPTURE_COMPLETED = "CAPTURE_COMPLETED"  # synchronous capture from the return page


class ExportFormat(str, Enum):
    """Admin export output formats."""

    CSV = "csv"
    XLSX = "xlsx"
    AICS = "aics"
