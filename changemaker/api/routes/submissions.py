"""
changemaker.api.routes.submissions — Participant submissions and the review queue
==================================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from changemaker.api.deps import WorkspaceContext, get_engine, require_workspace_access
from changemaker.api.serializers import submission_detail_dict, submission_dict
from changemaker.errors import WorkspaceAccessError
from changemaker.services import activity_service

router = APIRouter(prefix="/workspaces/{slug}/submissions", tags=["submissions"])


class SubmissionCreate(BaseModel):
    activity_id: str
    enrollment_id: str
    text_content: str | None = None
    file_urls: list[str] = Field(default_factory=list)
    link_url: str | None = None
    draft: bool = False


@router.get("")
def list_submissions(
    pending: bool = Query(False),
    challenge_id: str | None = Query(None),
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    """The caller's submissions, or with ``?pending=true`` the admin review queue."""
    if pending:
        if not ctx.is_admin:
            raise WorkspaceAccessError("Admin access required")
        rows = activity_service.list_pending_submissions(
            engine, ctx.workspace.id, challenge_id=challenge_id
        )
    else:
        rows = activity_service.list_user_submissions(
            engine, ctx.workspace.id, ctx.user.id, challenge_id=challenge_id
        )
    return {"submissions": [submission_detail_dict(s) for s in rows]}


@router.post("", status_code=201)
def create_submission(
    body: SubmissionCreate,
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    submission = activity_service.create_submission(
        engine,
        ctx.workspace.id,
        user_id=ctx.user.id,
        activity_id=body.activity_id,
        enrollment_id=body.enrollment_id,
        text_content=body.text_content,
        file_urls=body.file_urls,
        link_url=body.link_url,
        draft=body.draft,
    )
    return {"submission": submission_dict(submission)}
