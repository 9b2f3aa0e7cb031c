"""Admin accounts, key/value settings, and consumed magic-link tokens."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, TimestampMixin


class Admin(TimestampMixin, Base):
    """Back-office operator. Password is a bcrypt hash."""

    __tablename__ = "admins"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(100))
    password_hash: Mapped[str] = mapped_column(String(100), nullable=False)

    def __repr__(self) -> str:
        return f"<Admin email={self.email}>"


class Setting(TimestampMixin, Base):
    """Runtime-editable configuration value (e.g. MEMBERSHIP_FEE)."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(String(255))

    def __repr__(self) -> str:
        return f"<Setting {self.key}={self.value}>"


class UsedToken(TimestampMixin, Base):
    """A magic-link token id that has already been redeemed."""

    __tablename__ = "used_tokens"

    token_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    token_type: Mapped[str] = mapped_column(String(30), nullable=False, default="magic-link")
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
