"""
changemaker.api.routes.workspaces — Workspace CRUD, members and stats
======================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_current_user,
    get_engine,
    require_workspace_access,
    require_workspace_admin,
)
from changemaker.api.serializers import member_dict, workspace_dict
from changemaker.database.models import User
from changemaker.services import workspace_service

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


class WorkspaceCreate(BaseModel):
    slug: str
    name: str
    description: str | None = None


class WorkspaceUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    active: bool | None = None


@router.get("")
def list_my_workspaces(
    user: User = Depends(get_current_user),
    engine=Depends(get_engine),
):
    rows = workspace_service.list_user_workspaces(engine, user.id)
    return {"workspaces": [{**workspace_dict(ws), "role": role} for ws, role in rows]}


@router.post("", status_code=201)
def create_workspace(
    body: WorkspaceCreate,
    user: User = Depends(get_current_user),
    engine=Depends(get_engine),
):
    ws = workspace_service.create_workspace(
        engine,
        slug=body.slug,
        name=body.name,
        description=body.description,
        creator_id=user.id,
    )
    return {"workspace": workspace_dict(ws)}


@router.get("/{slug}")
def get_workspace(ctx: WorkspaceContext = Depends(require_workspace_access)):
    return {"workspace": workspace_dict(ctx.workspace), "role": ctx.role}


@router.patch("/{slug}")
def update_workspace(
    body: WorkspaceUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    ws = workspace_service.update_workspace(
        engine,
        ctx.workspace.id,
        name=body.name,
        description=body.description,
        active=body.active,
    )
    return {"workspace": workspace_dict(ws)}


@router.get("/{slug}/users")
def list_members(
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    members = workspace_service.list_workspace_members(engine, ctx.workspace.id)
    return {"users": [member_dict(m) for m in members]}


@router.get("/{slug}/stats")
def workspace_stats(
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    return {"stats": workspace_service.get_workspace_stats(engine, ctx.workspace.id)}
