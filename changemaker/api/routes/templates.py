"""
changemaker.api.routes.templates — Activity template library
=============================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_engine,
    require_workspace_access,
    require_workspace_admin,
)
from changemaker.api.serializers import template_dict
from changemaker.services import activity_service

router = APIRouter(prefix="/workspaces/{slug}/activity-templates", tags=["templates"])


class TemplateCreate(BaseModel):
    name: str
    type: str
    description: str = ""
    base_points: int = 0
    requires_approval: bool = True
    allow_multiple: bool = False
    reward_type: str | None = None
    reward_config: dict[str, Any] | None = None


class TemplateUpdate(BaseModel):
    name: str | None = None
    type: str | None = None
    description: str | None = None
    base_points: int | None = None
    requires_approval: bool | None = None
    allow_multiple: bool | None = None
    reward_type: str | None = None
    reward_config: dict[str, Any] | None = None


@router.get("")
def list_templates(
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    templates = activity_service.list_templates(engine, ctx.workspace.id)
    return {"templates": [template_dict(t) for t in templates]}


@router.post("", status_code=201)
def create_template(
    body: TemplateCreate,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    template = activity_service.create_template(engine, ctx.workspace.id, **body.model_dump())
    return {"template": template_dict(template)}


@router.put("/{template_id}")
def update_template(
    template_id: str,
    body: TemplateUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    template = activity_service.update_template(
        engine, ctx.workspace.id, template_id, body.model_dump(exclude_unset=True)
    )
    return {"template": template_dict(template)}


@router.delete("/{template_id}")
def delete_template(
    template_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    activity_service.delete_template(engine, ctx.workspace.id, template_id)
    return {"success": True}
