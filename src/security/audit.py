"""Audit log subscriber: persists every SystemEvent to the audit_log table.

Registered as a global subscriber at startup. Uses its own DB session so an
audit write never shares a transaction with the request that emitted it.
"""

from __future__ import annotations

import logging

from src.db.engine import async_session_factory
from src.models.audit import AuditLog
from src.schemas.events import SystemEvent

logger = logging.getLogger(__name__)


async def audit_on_event(event: SystemEvent) -> None:
    """Write a SystemEvent to the audit_log table.

    Failures are logged and swallowed: auditing must never break the flow
    that emitted the event.
    """
    try:
        async with async_session_factory() as db:
            db.add(AuditLog(
                event_type=event.event_type.value,
                user_id=event.user_id,
                membership_id=event.membership_id,
                actor_id=event.actor_id,
                actor_role=event.actor_role,
                data={**event.data, "source": event.source_module} if event.source_module else event.data,
            ))
            await db.commit()
    except Exception:
        logger.exception(
            "Failed to persist audit event: %s (user=%s)",
            event.event_type.value,
            event.user_id,
        )
