"""
changemaker.api.routes.enrollments — Joining, leaving and completing challenges
================================================================================

Participants manage their own enrollment (join, accept an invitation,
withdraw); admins may act on anyone's and are the only ones who can mark
an enrollment COMPLETED or delete it.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_engine,
    require_workspace_access,
    require_workspace_admin,
)
from changemaker.api.serializers import enrollment_dict
from changemaker.database.engine import run_db
from changemaker.database.models import EnrollmentStatus
from changemaker.errors import WorkspaceAccessError
from changemaker.rewardstack.issuance import issue_reward_transaction
from changemaker.services import enrollment_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/workspaces/{slug}/enrollments", tags=["enrollments"])

_SELF_SERVICE_STATUSES = {EnrollmentStatus.ENROLLED, EnrollmentStatus.WITHDRAWN}


class EnrollmentCreate(BaseModel):
    challenge_id: str
    user_id: str | None = None
    status: str = EnrollmentStatus.ENROLLED.value


class EnrollmentUpdate(BaseModel):
    status: str


@router.get("")
def list_enrollments(
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    """Admins see every enrollment in the workspace; others only their own."""
    if ctx.is_admin:
        rows = enrollment_service.list_workspace_enrollments(engine, ctx.workspace.id)
    else:
        rows = enrollment_service.list_user_enrollments(engine, ctx.workspace.id, ctx.user.id)
    return {
        "enrollments": [
            enrollment_dict(e, include_challenge=True, include_user=ctx.is_admin) for e in rows
        ]
    }


@router.post("", status_code=201)
def create_enrollment(
    body: EnrollmentCreate,
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    user_id = body.user_id or ctx.user.id
    if user_id != ctx.user.id and not ctx.is_admin:
        raise WorkspaceAccessError("Admin access required")
    enrollment = enrollment_service.create_enrollment(
        engine,
        ctx.workspace.id,
        user_id=user_id,
        challenge_id=body.challenge_id,
        status=body.status,
        actor_user_id=ctx.user.id,
    )
    return {"enrollment": enrollment_dict(enrollment)}


@router.patch("/{enrollment_id}")
async def update_enrollment(
    enrollment_id: str,
    body: EnrollmentUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    if not ctx.is_admin:
        current = await run_db(
            enrollment_service.get_enrollment, engine, ctx.workspace.id, enrollment_id
        )
        if current.user_id != ctx.user.id or body.status.upper() not in _SELF_SERVICE_STATUSES:
            raise WorkspaceAccessError("Admin access required")

    enrollment, issuance_id = await run_db(
        enrollment_service.update_enrollment_status,
        engine,
        ctx.workspace.id,
        enrollment_id,
        body.status.upper(),
        actor_user_id=ctx.user.id,
    )
    reward = None
    if issuance_id:
        result = await issue_reward_transaction(engine, issuance_id)
        if not result.success:
            logger.warning("Completion reward %s failed: %s", issuance_id, result.error)
        reward = {"id": issuance_id, "success": result.success, "error": result.error}
    return {"enrollment": enrollment_dict(enrollment), "reward": reward}


@router.delete("/{enrollment_id}")
def delete_enrollment(
    enrollment_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    enrollment_service.delete_enrollment(
        engine, ctx.workspace.id, enrollment_id, actor_user_id=ctx.user.id
    )
    return {"success": True}
