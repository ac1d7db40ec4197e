"""
changemaker.api.routes.account — The caller's own profile
==========================================================
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from changemaker.api.deps import get_current_user, get_engine
from changemaker.database.engine import run_db
from changemaker.database.models import User
from changemaker.rewardstack.participants import sync_participant
from changemaker.services import user_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/account", tags=["account"])


class ProfileUpdate(BaseModel):
    full_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    phone: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None
    department: str | None = None
    bio: str | None = None
    organization: str | None = None
    timezone: str | None = None
    default_landing: str | None = None
    default_workspace_slug: str | None = None
    date_format: str | None = None
    ui_density: str | None = None
    reduced_motion: bool | None = None
    show_keyboard_hints: bool | None = None
    notification_prefs: dict[str, Any] | None = None


async def _sync_reward_profiles(engine, user_id: str) -> None:
    """Push profile changes to RewardSTACK for every enabled workspace."""
    try:
        workspace_ids = await run_db(user_service.reward_sync_workspaces, engine, user_id)
        for workspace_id in workspace_ids:
            result = await sync_participant(engine, user_id, workspace_id)
            if not result.success:
                logger.warning(
                    "Profile sync to RewardSTACK failed for %s in %s: %s",
                    user_id, workspace_id, result.error,
                )
    except Exception:
        logger.exception("Profile sync to RewardSTACK failed for %s", user_id)


@router.get("/profile")
def get_profile(user: User = Depends(get_current_user)):
    return {"profile": user_service.profile_dict(user)}


@router.put("/profile")
async def update_profile(
    body: ProfileUpdate,
    user: User = Depends(get_current_user),
    engine=Depends(get_engine),
):
    updated, needs_sync = await run_db(
        user_service.update_profile, engine, user.id, body.model_dump(exclude_none=True)
    )
    if needs_sync:
        await _sync_reward_profiles(engine, user.id)
    return {"success": True, "profile": user_service.profile_dict(updated)}
