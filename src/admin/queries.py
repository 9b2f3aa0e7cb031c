"""Database query functions for the admin web dashboard.

Kept apart from the route handlers so the dashboard, the CLI scripts and
the health endpoint share the same query logic.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import async_session_factory, redis_client
from src.models.audit import AuditLog
from src.models.enums import MembershipStatus, PaymentStatus
from src.models.membership import Membership
from src.models.user import User

logger = logging.getLogger(__name__)


async def get_membership_stats(db: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    """Headline counters for the dashboard.

    Returns dict with: users, active, pending_payment, awaiting_card,
    expired, revenue_cents, new_today.
    """
    now = now or datetime.now(UTC)
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    users = await db.scalar(select(func.count(User.id))) or 0
    new_today = await db.scalar(select(func.count(User.id)).where(User.created_at >= today_start)) or 0

    result = await db.execute(
        select(Membership.status, func.count(Membership.id)).group_by(Membership.status)
    )
    by_status = {status: count for status, count in result.all()}

    awaiting_card = await db.scalar(
        select(func.count(Membership.id)).where(
            Membership.payment_status == PaymentStatus.SUCCEEDED.value,
            Membership.membership_number.is_(None),
            Membership.status != MembershipStatus.CANCELED.value,
        )
    ) or 0
    pending_payment = await db.scalar(
        select(func.count(Membership.id)).where(
            Membership.payment_status == PaymentStatus.PENDING.value,
            Membership.payment_provider_id.isnot(None),
            Membership.status == MembershipStatus.PENDING.value,
        )
    ) or 0
    revenue = await db.scalar(
        select(func.coalesce(func.sum(Membership.payment_amount), 0)).where(
            Membership.payment_status == PaymentStatus.SUCCEEDED.value
        )
    ) or 0

    return {
        "users": users,
        "new_today": new_today,
        "active": by_status.get(MembershipStatus.ACTIVE.value, 0),
        "expired": by_status.get(MembershipStatus.EXPIRED.value, 0),
        "canceled": by_status.get(MembershipStatus.CANCELED.value, 0),
        "pending_payment": pending_payment,
        "awaiting_card": awaiting_card,
        "revenue_cents": int(revenue),
    }


async def get_audit_log_paginated(
    db: AsyncSession,
    page: int = 1,
    per_page: int = 50,
    event_type: str | None = None,
) -> tuple[list[AuditLog], int]:
    """Get paginated audit log with optional event_type filter."""
    query = select(AuditLog)
    count_query = select(func.count(AuditLog.id))

    if event_type:
        query = query.where(AuditLog.event_type == event_type)
        count_query = count_query.where(AuditLog.event_type == event_type)

    result = await db.execute(count_query)
    total = result.scalar() or 0

    offset = (page - 1) * per_page
    result = await db.execute(
        query.order_by(AuditLog.created_at.desc()).offset(offset).limit(per_page)
    )
    logs = list(result.scalars().all())

    return logs, total


async def check_system_health() -> dict[str, Any]:
    """Check PostgreSQL and Redis health with latency measurements."""
    health: dict[str, Any] = {}

    # PostgreSQL
    try:
        t0 = time.monotonic()
        async with async_session_factory() as db:
            await db.execute(text("SELECT 1"))
        ms = int((time.monotonic() - t0) * 1000)
        health["postgresql"] = {"status": "ok", "latency_ms": ms}
    except Exception as exc:
        health["postgresql"] = {"status": "error", "error": str(exc)}

    # Redis
    try:
        t0 = time.monotonic()
        await redis_client.ping()
        ms = int((time.monotonic() - t0) * 1000)
        health["redis"] = {"status": "ok", "latency_ms": ms}
    except Exception as exc:
        health["redis"] = {"status": "error", "error": str(exc)}

    return health
