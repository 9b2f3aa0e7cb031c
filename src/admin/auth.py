"""HTTP Basic Auth for the admin web dashboard.

Username is the admin email, password is checked against the bcrypt hash in
the admins table. Until the first admin account exists (see
`python -m src.scripts.admin create`), the shared ADMIN_WEB_PASSWORD is
accepted instead. Failed attempts count against the admin login rate limit.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.db.engine import get_session
from src.models.admin import Admin
from src.security.passwords import verify_password
from src.security.rate_limiter import (
    ADMIN_LOGIN,
    TOO_MANY_ATTEMPTS,
    RateLimiter,
    get_client_ip,
    get_rate_limiter,
)

security = HTTPBasic()


@dataclass(frozen=True)
class AdminIdentity:
    """Authenticated operator. `id` is recorded as actor on audited actions."""

    id: str
    email: str


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Credenziali non valide",
        headers={"WWW-Authenticate": "Basic"},
    )


async def authenticate_admin(db: AsyncSession, email: str, password: str) -> AdminIdentity | None:
    """Return the identity for valid credentials, None otherwise."""
    normalized = email.strip().lower()
    result = await db.execute(select(Admin).where(func.lower(Admin.email) == normalized))
    admin = result.scalar_one_or_none()
    if admin is not None:
        if verify_password(password, admin.password_hash):
            return AdminIdentity(id=str(admin.id), email=admin.email)
        return None

    count = await db.scalar(select(func.count()).select_from(Admin))
    shared = settings.security.admin_web_password
    if not count and shared and secrets.compare_digest(password.encode("utf-8"), shared.encode("utf-8")):
        return AdminIdentity(id=f"shared:{normalized or 'admin'}", email=normalized)
    return None


async def verify_admin(
    request: Request,
    credentials: HTTPBasicCredentials = Depends(security),  # noqa: B008
    db: AsyncSession = Depends(get_session),  # noqa: B008
    limiter: RateLimiter = Depends(get_rate_limiter),  # noqa: B008
) -> AdminIdentity:
    """FastAPI dependency: verify HTTP Basic credentials.

    Returns the admin identity, raises 401 on bad credentials and 429 once
    the login limit for the client IP is exhausted.
    """
    ip = get_client_ip(request)
    retry_after = await limiter.blocked_for(ADMIN_LOGIN, ip)
    if retry_after:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=TOO_MANY_ATTEMPTS,
            headers={"Retry-After": str(retry_after)},
        )

    identity = await authenticate_admin(db, credentials.username, credentials.password)
    if identity is None:
        await limiter.enforce(ADMIN_LOGIN, ip)
        raise _unauthorized()
    return identity
