"""CardNumberRange model: admin-defined pool of membership numbers."""

from __future__ import annotations

import uuid

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, TimestampMixin


class CardNumberRange(TimestampMixin, Base):
    """Inclusive interval [start_number, end_number] for one association year."""

    __tablename__ = "card_number_ranges"
    __table_args__ = (
        CheckConstraint("start_number > 0", name="ck_card_ranges_positive"),
        CheckConstraint("start_number <= end_number", name="ck_card_ranges_ordered"),
    )

    association_year_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("association_years.id"), nullable=False, index=True
    )
    start_number: Mapped[int] = mapped_column(Integer, nullable=False)
    end_number: Mapped[int] = mapped_column(Integer, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(100))

    @property
    def size(self) -> int:
        return self.end_number - self.start_number + 1

    def __repr__(self) -> str:
        return f"<CardNumberRange {self.start_number}-{self.end_number}>"
