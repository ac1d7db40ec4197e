"""
changemaker.api.routes.managers — Challenge managers and manager review
========================================================================

Admins assign reviewers to a challenge; assigned managers work through
their queue and approve (MANAGER_APPROVED) or send back (NEEDS_REVISION)
PENDING submissions before the admin's final review.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_engine,
    require_workspace_admin,
    require_workspace_manager,
)
from changemaker.api.serializers import (
    assignment_dict,
    submission_detail_dict,
    submission_dict,
)
from changemaker.services import manager_service

router = APIRouter(prefix="/workspaces/{slug}", tags=["managers"])


class ManagerAssign(BaseModel):
    manager_id: str


class ManagerReview(BaseModel):
    action: str
    notes: str | None = None


@router.get("/challenges/{challenge_id}/managers")
def list_managers(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    rows = manager_service.list_challenge_managers(engine, ctx.workspace.id, challenge_id)
    return {"managers": [assignment_dict(a, include_manager=True) for a in rows]}


@router.post("/challenges/{challenge_id}/managers", status_code=201)
def assign_manager(
    challenge_id: str,
    body: ManagerAssign,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    assignment = manager_service.assign_manager(
        engine,
        ctx.workspace.id,
        challenge_id,
        manager_id=body.manager_id,
        assigned_by=ctx.user.id,
    )
    return {"assignment": assignment_dict(assignment)}


@router.delete("/challenges/{challenge_id}/managers/{manager_id}")
def unassign_manager(
    challenge_id: str,
    manager_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    manager_service.unassign_manager(
        engine, ctx.workspace.id, challenge_id, manager_id, actor_user_id=ctx.user.id
    )
    return {"success": True}


@router.get("/manager/queue")
def manager_queue(
    status: str | None = Query(None),
    ctx: WorkspaceContext = Depends(require_workspace_manager),
    engine=Depends(get_engine),
):
    rows = manager_service.list_manager_queue(
        engine, ctx.workspace.id, ctx.user.id, status=status
    )
    return {
        "workspace_id": ctx.workspace.id,
        "submissions": [submission_detail_dict(s) for s in rows],
    }


@router.post("/submissions/{submission_id}/manager-review")
def manager_review(
    submission_id: str,
    body: ManagerReview,
    ctx: WorkspaceContext = Depends(require_workspace_manager),
    engine=Depends(get_engine),
):
    submission = manager_service.manager_review_submission(
        engine,
        ctx.workspace.id,
        submission_id,
        action=body.action,
        reviewer_id=ctx.user.id,
        notes=body.notes,
    )
    return {"submission": submission_dict(submission)}
