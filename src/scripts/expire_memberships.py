"""One-shot expiration sweep, meant for cron.

Usage:
    python -m src.scripts.expire_memberships
"""

from __future__ import annotations

import asyncio

from src.admin.events import start_event_system, stop_event_system, subscribe
from src.config import settings
from src.db.engine import async_session_factory, engine
from src.membership.service import membership_service
from src.security.audit import audit_on_event
from src.logging_config import configure_logging


async def _run() -> int:
    subscribe(audit_on_event)
    await start_event_system()
    try:
        async with async_session_factory() as db:
            count = await membership_service.expire_memberships(db)
            await db.commit()
    finally:
        await stop_event_system()
        await engine.dispose()
    return count


def main() -> None:
    configure_logging(settings.log_level)
    count = asyncio.run(_run())
    print(f"Membership scadute: {count}")


if __name__ == "__main__":
    main()
