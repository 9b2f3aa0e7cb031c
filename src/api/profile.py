"""Member profile API: read and save the onboarding form."""
# ruff: noqa: B008

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.dependencies import get_current_user
from src.db.engine import get_session
from src.membership.profile import save_profile
from src.membership.service import membership_service
from src.models.user import User
from src.schemas.profile import ProfileResponse, ProfileUpdate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["profile"])

ERR_SAVE = "Errore durante il salvataggio. Riprova più tardi."


def _body(user: User) -> dict:
    summary = membership_service.summarize(user)
    profile = ProfileResponse.model_validate(user.profile) if user.profile else None
    return {
        "profile": profile.model_dump(mode="json") if profile else None,
        "system_state": summary.system_state.value,
        "can_purchase": summary.can_purchase,
    }


@router.get("/api/profile")
async def get_profile(user: User = Depends(get_current_user)) -> dict:
    return _body(user)


@router.put("/api/profile")
async def update_profile(
    form: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Validate and upsert the caller's profile. 400 with per-field errors."""
    try:
        result = await save_profile(db, user, form, actor_id=str(user.id))
    except Exception as exc:
        logger.exception("Saving profile failed for user %s", user.id)
        raise HTTPException(status_code=500, detail=ERR_SAVE) from exc
    if not result.success:
        return JSONResponse(status_code=400, content={"errors": result.errors})
    return {"success": True, **_body(user)}
