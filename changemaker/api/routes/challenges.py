"""
changemaker.api.routes.challenges — Challenges, their activities and reviews
=============================================================================

Members may read; creating, editing, reviewing and the analytics endpoints
are admin-only.  Approving a submission whose reward goes through
RewardSTACK submits the queued issuance before responding.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from changemaker.api.deps import (
    WorkspaceContext,
    get_config,
    get_engine,
    require_workspace_access,
    require_workspace_admin,
)
from changemaker.api.serializers import (
    activity_dict,
    challenge_dict,
    enrollment_dict,
    submission_dict,
)
from changemaker.config import ChangemakerConfig
from changemaker.database.engine import run_db
from changemaker.rewardstack.issuance import issue_reward_transaction
from changemaker.services import (
    activity_service,
    challenge_service,
    enrollment_service,
    points_service,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/workspaces/{slug}/challenges", tags=["challenges"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ChallengeCreate(BaseModel):
    title: str
    description: str
    start_date: str
    end_date: str
    enrollment_deadline: str | None = None
    reward_type: str | None = None
    reward_config: dict[str, Any] | None = None
    require_manager_approval: bool = False
    invited_participant_ids: list[str] = Field(default_factory=list)
    enrolled_participant_ids: list[str] = Field(default_factory=list)


class ChallengeUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    enrollment_deadline: str | None = None
    reward_type: str | None = None
    reward_config: dict[str, Any] | None = None
    require_manager_approval: bool | None = None
    status: str | None = None


class ActivityCreate(BaseModel):
    template_id: str
    points_value: int | None = None
    max_submissions: int = 1
    deadline: str | None = None
    is_required: bool = False


class ActivityUpdate(BaseModel):
    points_value: int | None = None
    max_submissions: int | None = None
    deadline: str | None = None
    is_required: bool | None = None


class ReviewRequest(BaseModel):
    action: str
    review_notes: str | None = None
    points_awarded: int | None = None


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------
@router.get("")
def list_challenges(
    status: str | None = Query(None),
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    rows = challenge_service.list_challenges(
        engine, ctx.workspace.id, user_id=ctx.user.id, status=status
    )
    return {
        "challenges": [
            {
                **challenge_dict(challenge),
                "enrollment": enrollment_dict(enrollment) if enrollment else None,
            }
            for challenge, enrollment in rows
        ]
    }


@router.post("", status_code=201)
def create_challenge(
    body: ChallengeCreate,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    challenge = challenge_service.create_challenge(
        engine,
        ctx.workspace.id,
        title=body.title,
        description=body.description,
        start_date=body.start_date,
        end_date=body.end_date,
        enrollment_deadline=body.enrollment_deadline,
        reward_type=body.reward_type,
        reward_config=body.reward_config,
        require_manager_approval=body.require_manager_approval,
        invited_user_ids=body.invited_participant_ids,
        enrolled_user_ids=body.enrolled_participant_ids,
        actor_user_id=ctx.user.id,
    )
    return {"challenge": challenge_dict(challenge)}


@router.get("/{challenge_id}")
def get_challenge(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    challenge = challenge_service.get_challenge(engine, ctx.workspace.id, challenge_id)
    return {"challenge": challenge_dict(challenge)}


@router.put("/{challenge_id}")
def update_challenge(
    challenge_id: str,
    body: ChallengeUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    updates = body.model_dump(exclude_unset=True)
    status = updates.pop("status", None)
    challenge = None
    if updates:
        challenge = challenge_service.update_challenge(
            engine, ctx.workspace.id, challenge_id, updates, actor_user_id=ctx.user.id
        )
    if status:
        challenge = challenge_service.set_challenge_status(
            engine, ctx.workspace.id, challenge_id, status, actor_user_id=ctx.user.id
        )
    if challenge is None:
        challenge = challenge_service.get_challenge(engine, ctx.workspace.id, challenge_id)
    return {"challenge": challenge_dict(challenge)}


@router.delete("/{challenge_id}")
def delete_challenge(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    challenge_service.delete_challenge(engine, ctx.workspace.id, challenge_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------
@router.get("/{challenge_id}/metrics")
def challenge_metrics(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
):
    metrics, leaderboard = challenge_service.get_challenge_metrics(
        engine,
        ctx.workspace.id,
        challenge_id,
        stalled_after=timedelta(days=cfg.stalled_invite_days),
    )
    return {
        "metrics": {
            "invited_count": metrics.invited_count,
            "enrolled_count": metrics.enrolled_count,
            "total_submissions": metrics.total_submissions,
            "approved_submissions": metrics.approved_submissions,
            "completion_pct": metrics.completion_pct,
            "avg_score": metrics.avg_score,
            "last_activity_at": metrics.last_activity_at.isoformat() if metrics.last_activity_at else None,
            "any_submissions": metrics.any_submissions,
            "pending_submission_count": metrics.pending_submission_count,
            "stalled_invites_count": metrics.stalled_invites_count,
        },
        "leaderboard": [
            {
                "user_id": entry.user_id,
                "email": entry.email,
                "display_name": entry.display_name,
                "points": entry.points,
            }
            for entry in leaderboard
        ],
    }


@router.get("/{challenge_id}/leaderboard")
def challenge_leaderboard(
    challenge_id: str,
    limit: int | None = Query(None, ge=1, le=100),
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
):
    rankings = points_service.challenge_leaderboard(
        engine, ctx.workspace.id, challenge_id, limit=limit or cfg.leaderboard_limit
    )
    return {
        "leaderboard": [
            {
                "rank": position,
                "user_id": r.user_id,
                "email": r.email,
                "display_name": r.display_name,
                "total_points": r.total_points,
                "submission_count": r.submission_count,
                "completed_activities": r.completed_activities,
            }
            for position, r in enumerate(rankings, start=1)
        ]
    }


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------
@router.get("/{challenge_id}/activities")
def list_activities(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    activities = activity_service.list_activities(engine, ctx.workspace.id, challenge_id)
    return {"activities": [activity_dict(a) for a in activities]}


@router.post("/{challenge_id}/activities", status_code=201)
def create_activity(
    challenge_id: str,
    body: ActivityCreate,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    deadline = (
        challenge_service.parse_datetime(body.deadline, "deadline") if body.deadline else None
    )
    activity = activity_service.create_activity(
        engine,
        ctx.workspace.id,
        challenge_id,
        template_id=body.template_id,
        points_value=body.points_value,
        max_submissions=body.max_submissions,
        deadline=deadline,
        is_required=body.is_required,
        actor_user_id=ctx.user.id,
    )
    return {"activity": activity_dict(activity, include_template=False)}


@router.put("/{challenge_id}/activities/{activity_id}")
def update_activity(
    challenge_id: str,
    activity_id: str,
    body: ActivityUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    updates = body.model_dump(exclude_unset=True)
    if updates.get("deadline"):
        updates["deadline"] = challenge_service.parse_datetime(updates["deadline"], "deadline")
    activity = activity_service.update_activity(
        engine, ctx.workspace.id, activity_id, updates, actor_user_id=ctx.user.id
    )
    return {"activity": activity_dict(activity, include_template=False)}


@router.delete("/{challenge_id}/activities/{activity_id}")
def delete_activity(
    challenge_id: str,
    activity_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    activity_service.delete_activity(engine, ctx.workspace.id, activity_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Enrollments & review
# ---------------------------------------------------------------------------
@router.get("/{challenge_id}/enrollments")
def list_challenge_enrollments(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    rows = enrollment_service.list_challenge_enrollments(engine, ctx.workspace.id, challenge_id)
    return {"enrollments": [enrollment_dict(e, include_user=True) for e in rows]}


@router.post("/{challenge_id}/submissions/{submission_id}/review")
async def review_submission(
    challenge_id: str,
    submission_id: str,
    body: ReviewRequest,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    submission, queued_id = await run_db(
        activity_service.review_submission,
        engine,
        ctx.workspace.id,
        submission_id,
        action=body.action,
        reviewer_id=ctx.user.id,
        review_notes=body.review_notes,
        points_awarded=body.points_awarded,
        challenge_id=challenge_id,
    )
    reward = None
    if queued_id:
        result = await issue_reward_transaction(engine, queued_id)
        if not result.success:
            logger.warning("Reward %s for submission %s failed: %s", queued_id, submission_id, result.error)
        reward = {"id": queued_id, "success": result.success, "error": result.error}
    return {"submission": submission_dict(submission), "reward": reward}
