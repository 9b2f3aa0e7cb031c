"""Redis-backed fixed-window rate limiter.

Counters live in Redis (INCR + EXPIRE keyed by rule, identity and window),
so every app instance shares them. The limiter is built per request from
the injected Redis client; tests pass a fake client instead.

Usage:
    async def handler(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)):
        await limiter.enforce(MAGIC_LINK_IP, get_client_ip(request))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request

from src.admin.events import emit
from src.config import settings
from src.db.engine import get_redis
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

TOO_MANY_ATTEMPTS = "Troppi tentativi. Riprova più tardi."


@dataclass(frozen=True)
class RateLimitRule:
    """`limit` requests per `window` seconds for one kind of action."""

    name: str
    limit: int
    window: int

    def key(self, identity: str) -> str:
        return f"rate:{self.name}:{identity.strip().lower()}"


MAGIC_LINK_IP = RateLimitRule("magic_link_ip", settings.rate_limit.magic_link_limit, settings.rate_limit.magic_link_window)
MAGIC_LINK_EMAIL = RateLimitRule(
    "magic_link_email", settings.rate_limit.magic_link_limit, settings.rate_limit.magic_link_window
)
ADMIN_LOGIN = RateLimitRule("admin_login", settings.rate_limit.admin_login_limit, settings.rate_limit.admin_login_window)
REGISTRATION = RateLimitRule(
    "registration", settings.rate_limit.registration_limit, settings.rate_limit.registration_window
)


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


class RateLimiter:
    """Fixed-window rate limiter backed by Redis INCR + EXPIRE."""

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def check(self, key: str, limit: int, window: int) -> tuple[bool, int]:
        """Count one request against `key`.

        Returns (allowed, retry_after): retry_after is the seconds until the
        window resets, 0 when allowed.
        """
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, window)

            if count > limit:
                ttl = await self._redis.ttl(key)
                return False, max(ttl, 1)

            return True, 0
        except Exception:
            logger.exception("Rate limiter Redis error for key %s", key)
            # Fail open: a Redis outage must not lock everyone out
            return True, 0

    async def hit(self, rule: RateLimitRule, identity: str) -> tuple[bool, int]:
        return await self.check(rule.key(identity), rule.limit, rule.window)

    async def blocked_for(self, rule: RateLimitRule, identity: str) -> int:
        """Seconds left in an exhausted window without counting a request, 0 if not blocked."""
        try:
            raw = await self._redis.get(rule.key(identity))
            if raw is None or int(raw) < rule.limit:
                return 0
            return max(await self._redis.ttl(rule.key(identity)), 1)
        except Exception:
            logger.exception("Rate limiter Redis error for %s", rule.name)
            return 0

    async def reset(self, rule: RateLimitRule, identity: str) -> None:
        """Forget the counter, e.g. after a successful admin login."""
        try:
            await self._redis.delete(rule.key(identity))
        except Exception:
            logger.exception("Rate limiter reset failed for %s", rule.name)

    async def enforce(self, rule: RateLimitRule, identity: str) -> None:
        """Raise HTTP 429 with Retry-After when the rule is exceeded."""
        allowed, retry_after = await self.hit(rule, identity)
        if allowed:
            return
        logger.warning("Rate limit %s exceeded (retry in %ds)", rule.name, retry_after)
        await emit(SystemEvent(
            event_type=EventType.RATE_LIMITED,
            data={"rule": rule.name, "retry_after": retry_after},
            source_module="security.rate_limiter",
        ))
        raise HTTPException(
            status_code=429,
            detail=TOO_MANY_ATTEMPTS,
            headers={"Retry-After": str(retry_after)},
        )


def get_rate_limiter(redis: aioredis.Redis = Depends(get_redis)) -> RateLimiter:  # noqa: B008
    """FastAPI dependency: a limiter over the shared Redis client."""
    return RateLimiter(redis)
