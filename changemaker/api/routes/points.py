"""
changemaker.api.routes.points — Balances and points budgets
============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_engine,
    require_workspace_access,
    require_workspace_admin,
)
from changemaker.services import points_service

router = APIRouter(prefix="/workspaces/{slug}/points", tags=["points"])


class BudgetUpdate(BaseModel):
    total_budget: int
    challenge_id: str | None = None


def _budget_dict(budget) -> dict | None:
    if budget is None:
        return None
    return {
        "total_budget": budget.total_budget,
        "allocated": budget.allocated,
        "remaining": max(0, budget.total_budget - budget.allocated),
        "updated_by": budget.updated_by,
    }


@router.get("")
def get_points(
    challenge_id: str | None = Query(None),
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    """The caller's balance; admins also get the budget figures."""
    data: dict = {"balance": points_service.get_user_balance(engine, ctx.user.id, ctx.workspace.id)}
    if ctx.is_admin:
        data["budget"] = _budget_dict(points_service.get_workspace_budget(engine, ctx.workspace.id))
        if challenge_id:
            budget = points_service.get_challenge_budget(engine, challenge_id)
            if budget is not None and budget.workspace_id != ctx.workspace.id:
                budget = None
            data["challenge_budget"] = _budget_dict(budget)
    return data


@router.put("")
def update_budget(
    body: BudgetUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    if body.challenge_id:
        budget = points_service.upsert_challenge_budget(
            engine, ctx.workspace.id, body.challenge_id, body.total_budget, updated_by=ctx.user.id
        )
    else:
        budget = points_service.upsert_workspace_budget(
            engine, ctx.workspace.id, body.total_budget, updated_by=ctx.user.id
        )
    return {"budget": _budget_dict(budget)}
