"""FastAPI dependencies for member (session cookie) authentication."""
# ruff: noqa: B008

from __future__ import annotations

import logging
import uuid

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.magic_link import TokenError, verify_session_token
from src.config import settings
from src.db.engine import get_session
from src.membership.service import membership_service
from src.models.user import User

logger = logging.getLogger(__name__)

NOT_AUTHORIZED = "Non autorizzato"


async def get_current_user(request: Request, db: AsyncSession = Depends(get_session)) -> User:
    """Load the user of the signed session cookie, or answer 401."""
    token = request.cookies.get(settings.security.session_cookie_name)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=NOT_AUTHORIZED)
    try:
        claims = verify_session_token(token)
        user_id = uuid.UUID(str(claims["sub"]))
    except (TokenError, ValueError) as exc:
        logger.info("Rejected session token: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=NOT_AUTHORIZED) from exc

    user = await membership_service.load_user(db, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=NOT_AUTHORIZED)
    return user
