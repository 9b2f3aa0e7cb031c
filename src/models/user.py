"""User and Profile models.

A User is the identity anchor (unique, lowercased email). The Profile holds
the personal data collected during onboarding and is one-to-one with User.
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from src.models.membership import Membership


class User(TimestampMixin, Base):
    """A registered person, identified by email."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    phone: Mapped[str | None] = mapped_column(String(30))
    newsletter_subscribed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Relationships
    profile: Mapped[Profile | None] = relationship(
        "Profile", back_populates="user", uselist=False, lazy="selectin"
    )
    memberships: Mapped[list[Membership]] = relationship(
        "Membership",
        back_populates="user",
        lazy="selectin",
        order_by="Membership.created_at.desc()",
    )

    @property
    def current_membership(self) -> Membership | None:
        """Newest membership, which is authoritative for state."""
        return self.memberships[0] if self.memberships else None

    def __repr__(self) -> str:
        return f"<User id={self.id}>"


class Profile(TimestampMixin, Base):
    """Personal and residence data of a user."""

    __tablename__ = "user_profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    # Identity
    first_name: Mapped[str | None] = mapped_column(String(100))
    last_name: Mapped[str | None] = mapped_column(String(100))
    birth_date: Mapped[date | None] = mapped_column(Date)
    tax_code: Mapped[str | None] = mapped_column(String(16), index=True)
    gender: Mapped[str | None] = mapped_column(String(1), comment="M or F")
    birth_city: Mapped[str | None] = mapped_column(String(100))
    birth_province: Mapped[str | None] = mapped_column(String(2))
    nationality: Mapped[str | None] = mapped_column(String(50))
    has_foreign_tax_code: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Residence
    address: Mapped[str | None] = mapped_column(String(200))
    city: Mapped[str | None] = mapped_column(String(100))
    postal_code: Mapped[str | None] = mapped_column(String(10))
    province: Mapped[str | None] = mapped_column(String(2))
    country: Mapped[str | None] = mapped_column(String(2), default="IT")

    # Identity document
    document_type: Mapped[str | None] = mapped_column(String(50))
    document_number: Mapped[str | None] = mapped_column(String(50))

    # Consents
    privacy_consent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    data_consent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    profile_complete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped[User] = relationship("User", back_populates="profile")

    def __repr__(self) -> str:
        return f"<Profile user={self.user_id} complete={self.profile_complete}>"
