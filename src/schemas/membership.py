"""Pydantic schemas for membership status, checkout, and card assignment."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from src.models.enums import SystemState


class MembershipSummary(BaseModel):
    """Derived membership view for a single user."""

    system_state: SystemState
    italian_label: str
    has_active_membership: bool = False
    membership_number: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    profile_complete: bool = False
    can_purchase: bool = False
    message: str = ""


class MembershipStatusResponse(BaseModel):
    """Body of GET /api/membership/status (polled after the PayPal redirect)."""

    system_state: SystemState
    italian_label: str
    membership_number: str | None = None
    profile_complete: bool
    can_purchase: bool


class CreateOrderResponse(BaseModel):
    order_id: str
    approval_url: str
    membership_id: uuid.UUID


class CaptureOrderRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=100)


class CaptureOrderResponse(BaseModel):
    success: bool
    already_captured: bool = False
    membership_id: uuid.UUID | None = None


class AssignCardsRequest(BaseModel):
    user_ids: list[uuid.UUID] = Field(min_length=1)


class AddRangeRequest(BaseModel):
    start_number: int
    end_number: int
