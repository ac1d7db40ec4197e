"""
changemaker.api.routes.rewardstack — RewardSTACK settings and participant sync
===============================================================================

All endpoints are workspace-admin only.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_config,
    get_engine,
    require_workspace_admin,
)
from changemaker.api.serializers import workspace_dict
from changemaker.config import ChangemakerConfig
from changemaker.database.engine import run_db
from changemaker.errors import ResourceNotFoundError, ValidationError
from changemaker.rewardstack.issuance import test_connection
from changemaker.rewardstack.participants import sync_participant, sync_workspace_participants
from changemaker.services import workspace_service

router = APIRouter(prefix="/workspaces/{slug}", tags=["rewardstack"])


class RewardStackConfigUpdate(BaseModel):
    enabled: bool | None = None
    environment: str | None = None
    program_id: str | None = None
    org_id: str | None = None
    webhook_secret: str | None = None


class ConnectionTest(BaseModel):
    environment: str | None = None
    program_id: str | None = None


class BulkSyncRequest(BaseModel):
    force: bool = False


@router.put("/rewardstack/config")
def update_config(
    body: RewardStackConfigUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    ws = workspace_service.update_rewardstack_config(
        engine,
        ctx.workspace.id,
        enabled=body.enabled,
        environment=body.environment,
        program_id=body.program_id,
        org_id=body.org_id,
        webhook_secret=body.webhook_secret,
    )
    return {"workspace": workspace_dict(ws)}


@router.post("/rewardstack/test-connection")
async def check_connection(
    body: ConnectionTest,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    cfg: ChangemakerConfig = Depends(get_config),
):
    environment = (
        body.environment
        or ctx.workspace.reward_stack_environment
        or cfg.rewardstack_default_environment
    )
    program_id = body.program_id or ctx.workspace.reward_stack_program_id
    return await test_connection(environment, program_id)


@router.post("/rewardstack/sync-participants")
async def sync_participants(
    body: BulkSyncRequest,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
):
    if not ctx.workspace.reward_stack_enabled:
        raise ValidationError("RewardSTACK is not enabled for this workspace")
    summary = await sync_workspace_participants(
        engine,
        ctx.workspace.id,
        force=body.force,
        stale_minutes=cfg.rewardstack_sync_stale_minutes,
    )
    return {"summary": asdict(summary)}


@router.post("/participants/{user_id}/rewardstack-sync")
async def sync_one_participant(
    user_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    if not ctx.workspace.reward_stack_enabled:
        raise ValidationError("RewardSTACK is not enabled for this workspace")
    if not await run_db(workspace_service.verify_workspace_access, engine, user_id, ctx.workspace.id):
        raise ResourceNotFoundError("Participant", user_id)
    result = await sync_participant(engine, user_id, ctx.workspace.id)
    return asdict(result)
