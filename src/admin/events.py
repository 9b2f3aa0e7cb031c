"""In-process event bus for SystemEvents.

Membership, payment and admin code emit events. Subscribers (the audit
logger) are registered at startup and run on a background worker so a slow
subscriber never delays a request or a webhook acknowledgement.

Usage:
    from src.admin.events import emit

    await emit(SystemEvent(
        event_type=EventType.PAYMENT_COMPLETED,
        membership_id=membership.id,
        data={"amount": 2500},
    ))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]

# ── Internal state ───────────────────────────────────────────────────

_global_handlers: list[EventHandler] = []
_typed_handlers: dict[EventType, list[EventHandler]] = {}
_queue: asyncio.Queue[SystemEvent] | None = None
_worker: asyncio.Task[None] | None = None


# ── Public API ───────────────────────────────────────────────────────


def subscribe(handler: EventHandler, event_types: list[EventType] | None = None) -> None:
    """Register an async handler for all events, or only for `event_types`."""
    if event_types is None:
        _global_handlers.append(handler)
        logger.info("Registered global event subscriber: %s", handler.__name__)
        return
    for event_type in event_types:
        _typed_handlers.setdefault(event_type, []).append(handler)
    logger.info("Registered %s for %d event types", handler.__name__, len(event_types))


def clear_subscribers() -> None:
    """Drop every registered handler."""
    _global_handlers.clear()
    _typed_handlers.clear()


async def emit(event: SystemEvent) -> None:
    """Queue an event for the background worker."""
    global _queue
    if _queue is None:
        _queue = asyncio.Queue()
        _start_worker()
    await _queue.put(event)
    logger.debug("Event emitted: %s (user=%s)", event.event_type.value, event.user_id)


# ── Background worker ────────────────────────────────────────────────


def _start_worker() -> None:
    global _worker
    if _worker is None or _worker.done():
        _worker = asyncio.create_task(_drain_forever())


async def _drain_forever() -> None:
    while _queue is not None:
        try:
            event = await _queue.get()
        except asyncio.CancelledError:
            break
        try:
            await _dispatch(event)
        except Exception:
            logger.exception("Error dispatching %s", event.event_type.value)
        finally:
            _queue.task_done()


async def _dispatch(event: SystemEvent) -> None:
    handlers = [*_global_handlers, *_typed_handlers.get(event.event_type, [])]
    if not handlers:
        return
    results = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
    for handler, result in zip(handlers, results):
        if isinstance(result, Exception):
            logger.error(
                "Event handler %s failed for %s: %s",
                handler.__name__,
                event.event_type.value,
                result,
            )


# ── Lifecycle ────────────────────────────────────────────────────────


async def start_event_system() -> None:
    """Create the queue and worker. Call during FastAPI lifespan startup."""
    global _queue
    _queue = asyncio.Queue()
    _start_worker()
    logger.info(
        "Event system started with %d global + %d typed subscribers",
        len(_global_handlers),
        sum(len(v) for v in _typed_handlers.values()),
    )


async def stop_event_system() -> None:
    """Flush pending events and stop the worker."""
    global _queue, _worker
    if _queue is not None:
        await _queue.join()
    if _worker is not None and not _worker.done():
        _worker.cancel()
        try:
            await _worker
        except asyncio.CancelledError:
            pass
    _worker = None
    _queue = None
    logger.info("Event system stopped")
