"""Passwordless member login: request a magic link, redeem it, log out."""
# ruff: noqa: B008

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.admin.events import emit
from src.auth.magic_link import (
    TokenError,
    generate_magic_link_token,
    generate_session_token,
    magic_link_url,
    verify_magic_link_token,
)
from src.config import settings
from src.db.engine import get_session
from src.models.user import User
from src.notifications.mailer import EmailError, Mailer, mailer, mask_email
from src.schemas.events import EventType, SystemEvent
from src.security.rate_limiter import (
    MAGIC_LINK_EMAIL,
    MAGIC_LINK_IP,
    RateLimiter,
    get_client_ip,
    get_rate_limiter,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

LINK_SENT = "Se l'indirizzo è corretto riceverai a breve un link di accesso"
INVALID_LINK = "Link non valido o scaduto"


class MagicLinkRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    @field_validator("email", mode="before")
    @classmethod
    def normalize(cls, v: str) -> str:
        return v.strip().lower() if isinstance(v, str) else v


def get_mailer() -> Mailer:
    return mailer


async def find_or_create_user(db: AsyncSession, email: str) -> tuple[User, bool]:
    """Existing user for the (lowercased) email, or a new one. Returns (user, created)."""
    normalized = email.strip().lower()
    result = await db.execute(select(User).where(func.lower(User.email) == normalized))
    user = result.scalar_one_or_none()
    if user is not None:
        return user, False
    user = User(id=uuid.uuid4(), email=normalized)
    db.add(user)
    await db.flush()
    logger.info("Created user %s for %s", user.id, mask_email(normalized))
    return user, True


@router.post("/magic-link")
async def request_magic_link(
    body: MagicLinkRequest,
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
    email_client: Mailer = Depends(get_mailer),
) -> dict:
    """Same answer whether or not the address is known."""
    await limiter.enforce(MAGIC_LINK_IP, get_client_ip(request))
    await limiter.enforce(MAGIC_LINK_EMAIL, body.email)

    token = generate_magic_link_token(body.email)
    try:
        await email_client.send_magic_link(
            body.email, magic_link_url(token), settings.security.magic_link_expiry_minutes
        )
    except EmailError as exc:
        await emit(SystemEvent(
            event_type=EventType.EMAIL_FAILED,
            data={"kind": "magic_link", "transient": exc.is_transient},
            source_module="api.auth",
        ))
    else:
        await emit(SystemEvent(
            event_type=EventType.MAGIC_LINK_SENT,
            data={"email": mask_email(body.email)},
            source_module="api.auth",
        ))
    return {"success": True, "message": LINK_SENT}


@router.get("/verify")
async def verify(token: str, response: Response, db: AsyncSession = Depends(get_session)) -> dict:
    try:
        email = await verify_magic_link_token(db, token)
    except TokenError as exc:
        logger.info("Magic link rejected: %s", exc)
        raise HTTPException(status_code=400, detail=INVALID_LINK) from exc

    user, created = await find_or_create_user(db, email)
    session_token = generate_session_token(str(user.id), user.email)
    response.set_cookie(
        settings.security.session_cookie_name,
        session_token,
        max_age=settings.security.session_expiry_days * 24 * 3600,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    await emit(SystemEvent(
        event_type=EventType.USER_LOGIN,
        user_id=user.id,
        data={"new_user": created},
        source_module="api.auth",
    ))
    return {"success": True, "user_id": str(user.id), "new_user": created}


@router.post("/logout")
async def logout(response: Response) -> dict:
    response.delete_cookie(settings.security.session_cookie_name)
    return {"success": True}
