"""
changemaker.api.routes.rewards — Reward issuances
==================================================

Listing is open to members (non-admins only see their own rewards);
issuing, retrying and reconciliation are admin-only.  When the workspace
has RewardSTACK enabled, new and requeued issuances are submitted before
the response is returned.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_engine,
    require_workspace_access,
    require_workspace_admin,
)
from changemaker.api.serializers import reward_dict
from changemaker.database.engine import run_db
from changemaker.database.models import RewardStatus
from changemaker.rewardstack.issuance import IssuanceResult, issue_reward_transaction, issue_rewards
from changemaker.services import reward_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/workspaces/{slug}/rewards", tags=["rewards"])


class RewardIssue(BaseModel):
    user_id: str
    type: str
    amount: int | None = None
    currency: str | None = None
    sku_id: str | None = None
    provider: str | None = None
    challenge_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None


class RewardRetry(BaseModel):
    reward_ids: list[str] | None = None


def _result_dict(result: IssuanceResult) -> dict[str, Any]:
    return {
        "id": result.reward_issuance_id,
        "success": result.success,
        "transaction_id": result.transaction_id,
        "adjustment_id": result.adjustment_id,
        "error": result.error,
    }


@router.get("")
def list_rewards(
    status: str | None = Query(None),
    reward_type: str | None = Query(None, alias="type"),
    challenge_id: str | None = Query(None),
    user_id: str | None = Query(None),
    ctx: WorkspaceContext = Depends(require_workspace_access),
    engine=Depends(get_engine),
):
    if not ctx.is_admin:
        user_id = ctx.user.id
    rewards = reward_service.list_workspace_rewards(
        engine,
        ctx.workspace.id,
        status=status,
        reward_type=reward_type,
        challenge_id=challenge_id,
        user_id=user_id,
    )
    return {"rewards": [reward_dict(r) for r in rewards]}


@router.post("/issue", status_code=201)
async def issue_reward(
    body: RewardIssue,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    issuance = await run_db(
        reward_service.issue_reward,
        engine,
        ctx.workspace.id,
        user_id=body.user_id,
        reward_type=body.type,
        amount=body.amount,
        currency=body.currency,
        sku_id=body.sku_id,
        provider=body.provider,
        challenge_id=body.challenge_id,
        description=body.description,
        issued_by=ctx.user.id,
        metadata=body.metadata,
    )
    result = None
    if ctx.workspace.reward_stack_enabled and issuance.status == RewardStatus.PENDING:
        outcome = await issue_reward_transaction(engine, issuance.id)
        result = _result_dict(outcome)
        issuance = await run_db(reward_service.get_reward, engine, issuance.id)
    return {"reward": reward_dict(issuance), "result": result}


@router.post("/retry")
async def retry_rewards(
    body: RewardRetry,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    requeued = await run_db(
        reward_service.retry_failed_rewards, engine, ctx.workspace.id, body.reward_ids
    )
    results = []
    if requeued and ctx.workspace.reward_stack_enabled:
        results = [_result_dict(r) for r in await issue_rewards(engine, requeued)]
    return {"requeued": requeued, "results": results}


@router.get("/reconcile")
def reconcile(
    challenge_id: str | None = Query(None),
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    return {"reconciliation": reward_service.reconcile_rewards(engine, ctx.workspace.id, challenge_id)}
