"""
changemaker.api.auth — Supabase session → local user
=====================================================

Supabase owns sign-in; the frontend calls ``/auth/sync-user`` after each
login so the local ``users`` row exists and is linked to the identity.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from changemaker.api.deps import get_current_user, get_engine, get_token_claims
from changemaker.api.serializers import user_dict
from changemaker.database.engine import run_db
from changemaker.database.models import User
from changemaker.services import user_service, workspace_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/sync-user")
async def sync_user(
    claims: dict = Depends(get_token_claims),
    engine=Depends(get_engine),
):
    """Create or link the local user for the caller's Supabase identity."""
    user = await run_db(
        user_service.sync_user_from_claims,
        engine,
        supabase_user_id=claims["sub"],
        email=claims["email"],
        user_metadata=claims.get("user_metadata"),
    )
    role = claims.get("role") or "authenticated"
    return {"success": True, "user": {"id": user.id, "email": user.email, "role": role}}


@router.get("/me")
async def me(
    user: User = Depends(get_current_user),
    engine=Depends(get_engine),
):
    memberships = await run_db(workspace_service.list_user_workspaces, engine, user.id)
    return {
        "user": user_dict(user),
        "workspaces": [
            {"id": ws.id, "slug": ws.slug, "name": ws.name, "role": role}
            for ws, role in memberships
        ],
    }
