"""Passwordless login: magic-link tokens and session tokens (HS256 JWT).

A magic link carries a random `jti`; redeeming it inserts that jti into
used_tokens, whose unique constraint makes every link single-use even under
concurrent clicks. Session tokens are longer-lived and stateless.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from jwt import InvalidTokenError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.models.admin import UsedToken

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
MAGIC_LINK_TYPE = "magic-link"
SESSION_TYPE = "session"


class TokenError(Exception):
    """Token is invalid, expired, of the wrong type, or already used."""


def _secret() -> str:
    secret = settings.security.jwt_secret
    if not secret:
        raise TokenError("JWT secret not configured")
    return secret


def _encode(payload: dict[str, Any], lifetime: timedelta, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    body = {"iat": int(now.timestamp()), "exp": int((now + lifetime).timestamp()), **payload}
    return jwt.encode(body, _secret(), algorithm=ALGORITHM)


def _decode(token: str, expected_type: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(
            token,
            _secret(),
            algorithms=[ALGORITHM],
            leeway=5,
            options={"require": ["exp", "iat", "sub", "type"]},
        )
    except InvalidTokenError as exc:
        raise TokenError(str(exc)) from exc
    if payload.get("type") != expected_type:
        raise TokenError(f"Expected {expected_type} token")
    return payload


# ── Magic links ──────────────────────────────────────────────────────


def generate_magic_link_token(email: str, now: datetime | None = None) -> str:
    lifetime = timedelta(minutes=settings.security.magic_link_expiry_minutes)
    return _encode(
        {"sub": email.strip().lower(), "type": MAGIC_LINK_TYPE, "jti": secrets.token_urlsafe(24)},
        lifetime,
        now,
    )


def magic_link_url(token: str) -> str:
    return f"{settings.association.app_url.rstrip('/')}/auth/verify?token={token}"


def peek_magic_link_token(token: str) -> str | None:
    """Email the token was issued for, without consuming it. None if invalid."""
    try:
        return _decode(token, MAGIC_LINK_TYPE)["sub"]
    except TokenError:
        return None


async def verify_magic_link_token(db: AsyncSession, token: str) -> str:
    """Validate and consume a magic-link token. Returns the email.

    Raises TokenError when invalid or already used.
    """
    payload = _decode(token, MAGIC_LINK_TYPE)
    jti = payload.get("jti")
    if not jti:
        raise TokenError("Missing token id")

    try:
        async with db.begin_nested():
            db.add(UsedToken(
                token_id=jti,
                token_type=MAGIC_LINK_TYPE,
                email=payload["sub"],
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            ))
            await db.flush()
    except IntegrityError as exc:
        logger.warning("Magic link reused")
        raise TokenError("Token already used") from exc
    return payload["sub"]


# ── Sessions ─────────────────────────────────────────────────────────


def generate_session_token(user_id: str, email: str, now: datetime | None = None) -> str:
    lifetime = timedelta(days=settings.security.session_expiry_days)
    return _encode({"sub": user_id, "email": email, "type": SESSION_TYPE}, lifetime, now)


def verify_session_token(token: str) -> dict[str, Any]:
    """Decoded session claims (`sub` = user id). Raises TokenError."""
    return _decode(token, SESSION_TYPE)
