"""
changemaker.api.routes.leaderboard — Workspace leaderboards
============================================================

Two views: activity counts over a period (``day|week|month|all``,
optionally one challenge) and lifetime points balances.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from changemaker.api.deps import WorkspaceContext, get_config, get_engine, require_workspace_access
from changemaker.config import ChangemakerConfig
from changemaker.engine.metrics import PERIODS
from changemaker.errors import ValidationError
from changemaker.services import points_service

router = APIRouter(prefix="/workspaces/{slug}/leaderboard", tags=["leaderboard"])


@router.get("")
def activity_leaderboard(
    period: str = Query("all"),
    challenge_id: str | None = Query(None),
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    if period not in PERIODS:
        raise ValidationError(f"Invalid period: {period}")
    entries, stats = points_service.activity_leaderboard(
        engine, ctx.workspace.id, period=period, challenge_id=challenge_id
    )
    return {
        "leaderboard": [
            {
                "rank": position,
                "user_id": e.user_id,
                "name": e.name,
                "email": e.email,
                "activity_count": e.activity_count,
                "avatar_url": e.avatar_url,
            }
            for position, e in enumerate(entries, start=1)
        ],
        "stats": {
            "top_count": stats.top_count,
            "average_count": stats.average_count,
            "participant_count": stats.participant_count,
            "hidden_count": stats.hidden_count,
        },
        "period": period,
    }


@router.get("/points")
def points_leaderboard(
    limit: int | None = Query(None, ge=1, le=100),
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
):
    rows = points_service.workspace_points_leaderboard(
        engine, ctx.workspace.id, limit=limit or cfg.leaderboard_limit
    )
    return {"leaderboard": [{"rank": i, **row} for i, row in enumerate(rows, start=1)]}
