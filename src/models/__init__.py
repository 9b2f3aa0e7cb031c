"""SQLAlchemy ORM models.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from src.models.admin import Admin, Setting, UsedToken
from src.models.audit import AuditLog
from src.models.base import Base
from src.models.card_range import CardNumberRange
from src.models.enums import (
    ExportFormat,
    MembershipStatus,
    PaymentEventType,
    PaymentStatus,
    SystemState,
)
from src.models.membership import AssociationYear, Membership, PaymentLog
from src.models.user import Profile, User

__all__ = [
    # Base
    "Base",
    # Models
    "User",
    "Profile",
    "AssociationYear",
    "Membership",
    "PaymentLog",
    "CardNumberRange",
    "Admin",
    "Setting",
    "UsedToken",
    "AuditLog",
    # Enums
    "PaymentStatus",
    "MembershipStatus",
    "SystemState",
    "PaymentEventType",
    "ExportFormat",
]
