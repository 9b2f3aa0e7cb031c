"""Membership, AssociationYear and PaymentLog models.

PaymentLog is append-only. Its two unique keys, (membership_id, event_type)
and provider_event_id, make a duplicate webhook delivery fail at insert time.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models.base import Base, TimestampMixin
from src.models.enums import MembershipStatus, PaymentStatus

if TYPE_CHECKING:
    from src.models.user import User


class AssociationYear(TimestampMixin, Base):
    """A membership period with its own fee. At most one is active."""

    __tablename__ = "association_years"

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    membership_fee: Mapped[int] = mapped_column(Integer, nullable=False, comment="Cents")
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<AssociationYear {self.start_date}..{self.end_date} active={self.is_active}>"


class Membership(TimestampMixin, Base):
    """One membership attempt of a user. The newest row is the current one."""

    __tablename__ = "memberships"
    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'ACTIVE', 'EXPIRED', 'CANCELED')", name="ck_memberships_status"
        ),
        CheckConstraint(
            "payment_status IN ('PENDING', 'SUCCEEDED', 'FAILED', 'CANCELED')",
            name="ck_memberships_payment_status",
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    association_year_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("association_years.id"), index=True
    )

    membership_number: Mapped[str | None] = mapped_column(String(20), unique=True)
    status: Mapped[str] = mapped_column(
        String(20), default=MembershipStatus.PENDING.value, nullable=False, index=True
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True
    )
    payment_provider_id: Mapped[str | None] = mapped_column(String(100), index=True, comment="PayPal order id")
    payment_amount: Mapped[int | None] = mapped_column(Integer, comment="Cents")

    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    card_assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_by: Mapped[str | None] = mapped_column(String(100), comment="Admin id or 'webhook'")

    user: Mapped[User] = relationship("User", back_populates="memberships")
    association_year: Mapped[AssociationYear | None] = relationship("AssociationYear", lazy="selectin")
    payment_logs: Mapped[list[PaymentLog]] = relationship(
        "PaymentLog", back_populates="membership", lazy="selectin"
    )

    def __repr__(self) -> str:
        return (
            f"<Membership id={self.id} status={self.status} "
            f"payment={self.payment_status} number={self.membership_number}>"
        )


class PaymentLog(TimestampMixin, Base):
    """Append-only record of one processed payment event."""

    __tablename__ = "payment_logs"
    __table_args__ = (
        UniqueConstraint("membership_id", "event_type", name="uq_payment_logs_membership_event"),
    )

    membership_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("memberships.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_event_id: Mapped[str | None] = mapped_column(String(100), unique=True)
    amount: Mapped[int | None] = mapped_column(Integer, comment="Cents")
    provider_response: Mapped[dict[str, Any] | None] = mapped_column(JSONB)

    membership: Mapped[Membership] = relationship("Membership", back_populates="payment_logs")

    def __repr__(self) -> str:
        return f"<PaymentLog membership={self.membership_id} event={self.event_type}>"
