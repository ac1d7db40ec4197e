"""
changemaker.services.reward_service — Reward Issuance Records
==============================================================

``reward_issuances`` is the local ledger of rewards owed to participants.
A row is created PENDING here; :mod:`changemaker.rewardstack.issuance`
submits it to RewardSTACK and records the outcome through
:func:`mark_reward_result`.

Status pairs::

    status          reward_stack_status
    PENDING         PENDING / PROCESSING   (queued / in flight)
    ISSUED          COMPLETED              (accepted by RewardSTACK)
    FAILED          FAILED                 (retryable via retry_failed_rewards)
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.models import (
    ActivitySubmission,
    Challenge,
    RewardIssuance,
    RewardStackStatus,
    RewardStatus,
    RewardType,
    Workspace,
    WorkspaceMembership,
)
from changemaker.engine.rewards import validate_reward_request
from changemaker.errors import ResourceNotFoundError, ValidationError, WorkspaceAccessError
from changemaker.services.points_service import award_points_with_budget

logger = logging.getLogger(__name__)

COMPLETION_TRIGGER = "challenge_completion"


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
def add_issuance(
    session: Session,
    *,
    workspace_id: str,
    user_id: str,
    reward_type: str,
    amount: int | None = None,
    currency: str | None = None,
    sku_id: str | None = None,
    provider: str | None = None,
    challenge_id: str | None = None,
    submission_id: str | None = None,
    description: str | None = None,
    issued_by: str | None = None,
    metadata: dict[str, Any] | None = None,
    award_points: bool = True,
) -> RewardIssuance:
    """Validate and add a PENDING issuance to the caller's session.

    Points rewards are also credited to the local balance (through the
    points budget) unless *award_points* is False.  A given submission is
    linked to the new issuance.
    """
    kind = validate_reward_request(
        reward_type, amount=amount, currency=currency, sku_id=sku_id
    )
    issuance = RewardIssuance(
        user_id=user_id,
        workspace_id=workspace_id,
        challenge_id=challenge_id,
        type=kind.value,
        amount=amount or None,
        currency=currency or None,
        sku_id=sku_id or None,
        provider=provider or None,
        description=description,
        status=RewardStatus.PENDING.value,
        reward_stack_status=RewardStackStatus.PENDING.value,
        metadata_=metadata,
        issued_by=issued_by,
    )
    session.add(issuance)
    session.flush()

    if submission_id:
        submission = session.get(ActivitySubmission, submission_id)
        if submission is None:
            raise ResourceNotFoundError("Submission", submission_id)
        submission.reward_issuance_id = issuance.id
        submission.reward_issued = True

    if award_points and kind is RewardType.POINTS:
        award_points_with_budget(
            session,
            workspace_id=workspace_id,
            to_user_id=user_id,
            amount=amount,
            challenge_id=challenge_id,
            submission_id=submission_id,
            actor_user_id=issued_by,
        )
    return issuance


def issue_reward(engine: Engine, workspace_id: str, **params: Any) -> RewardIssuance:
    """Create an issuance for a workspace member (manual issue).

    The row stays PENDING for RewardSTACK submission when the workspace has
    it enabled; otherwise a points reward is settled locally as ISSUED.
    """
    with Session(engine, expire_on_commit=False) as session:
        member = session.scalar(
            select(WorkspaceMembership.id).where(
                WorkspaceMembership.user_id == params.get("user_id"),
                WorkspaceMembership.workspace_id == workspace_id,
            )
        )
        if member is None:
            raise WorkspaceAccessError("User is not a member of this workspace")
        challenge_id = params.get("challenge_id")
        if challenge_id:
            challenge = session.get(Challenge, challenge_id)
            if challenge is None or challenge.workspace_id != workspace_id:
                raise ResourceNotFoundError("Challenge", challenge_id)

        issuance = add_issuance(session, workspace_id=workspace_id, **params)
        workspace = session.get(Workspace, workspace_id)
        if not workspace.reward_stack_enabled and issuance.type == RewardType.POINTS:
            issuance.status = RewardStatus.ISSUED.value
            issuance.reward_stack_status = None
            issuance.issued_at = datetime.now(UTC)
        session.commit()
        session.refresh(issuance)
        session.expunge(issuance)

    logger.info(
        "Created %s reward %s (%s) for user %s in %s",
        issuance.type, issuance.id, issuance.status, issuance.user_id, workspace_id,
    )
    return issuance


def create_completion_reward(
    engine: Engine,
    *,
    user_id: str,
    challenge_id: str,
    enrollment_id: str | None = None,
) -> str | None:
    """Queue the challenge's completion reward, at most once per user.

    Returns the new issuance id, or ``None`` when nothing is owed
    (RewardSTACK disabled, no usable reward config, or already issued).
    """
    with Session(engine, expire_on_commit=False) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None:
            raise ResourceNotFoundError("Challenge", challenge_id)
        workspace = session.get(Workspace, challenge.workspace_id)
        if workspace is None or not workspace.reward_stack_enabled:
            return None
        if not challenge.reward_type or not challenge.reward_config:
            return None

        config = challenge.reward_config
        amount = None
        sku_id = None
        if challenge.reward_type == RewardType.POINTS:
            try:
                amount = int(config.get("amount") or 0)
            except (TypeError, ValueError):
                amount = 0
            if amount <= 0:
                return None
        elif challenge.reward_type == RewardType.SKU:
            sku_id = config.get("skuId")
            if not sku_id:
                return None
        else:
            logger.info(
                "Completion rewards of type %s are not issued automatically", challenge.reward_type
            )
            return None

        earlier = session.scalars(
            select(RewardIssuance.metadata_).where(
                RewardIssuance.user_id == user_id, RewardIssuance.challenge_id == challenge_id
            )
        ).all()
        # submission rewards share the challenge id
        if any((meta or {}).get("triggerType") == COMPLETION_TRIGGER for meta in earlier):
            logger.info("Completion reward already exists for %s in %s", user_id, challenge_id)
            return None

        description = config.get("description") or f"Completion reward for {challenge.title}"
        issuance = RewardIssuance(
            user_id=user_id,
            workspace_id=challenge.workspace_id,
            challenge_id=challenge_id,
            type=challenge.reward_type,
            amount=amount,
            sku_id=sku_id,
            provider="RewardSTACK",
            description=description,
            status=RewardStatus.PENDING.value,
            reward_stack_status=RewardStackStatus.PENDING.value,
            metadata_={
                "challengeTitle": challenge.title,
                "rewardDescription": description,
                "triggerType": COMPLETION_TRIGGER,
                "enrollmentId": enrollment_id,
            },
        )
        session.add(issuance)
        session.commit()
        issuance_id = issuance.id

    logger.info("Queued completion reward %s for %s in %s", issuance_id, user_id, challenge_id)
    return issuance_id


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------
def get_reward(engine: Engine, issuance_id: str) -> RewardIssuance:
    with Session(engine) as session:
        issuance = session.get(RewardIssuance, issuance_id)
        if issuance is None:
            raise ResourceNotFoundError("Reward", issuance_id)
        session.expunge(issuance)
        return issuance


def list_workspace_rewards(
    engine: Engine,
    workspace_id: str,
    *,
    status: str | None = None,
    reward_type: str | None = None,
    challenge_id: str | None = None,
    user_id: str | None = None,
) -> list[RewardIssuance]:
    """Rewards newest first, optionally filtered."""
    with Session(engine) as session:
        query = (
            select(RewardIssuance)
            .where(RewardIssuance.workspace_id == workspace_id)
            .order_by(RewardIssuance.created_at.desc())
        )
        if status:
            query = query.where(RewardIssuance.status == status)
        if reward_type:
            query = query.where(RewardIssuance.type == reward_type)
        if challenge_id:
            query = query.where(RewardIssuance.challenge_id == challenge_id)
        if user_id:
            query = query.where(RewardIssuance.user_id == user_id)
        rows = list(session.scalars(query).all())
        for row in rows:
            session.expunge(row)
        return rows


def list_user_rewards(engine: Engine, workspace_id: str, user_id: str) -> list[RewardIssuance]:
    return list_workspace_rewards(engine, workspace_id, user_id=user_id)


def reconcile_rewards(
    engine: Engine, workspace_id: str, challenge_id: str | None = None
) -> dict[str, Any]:
    """Totals by status and counts by reward type."""
    with Session(engine) as session:
        query = select(RewardIssuance.status, RewardIssuance.type).where(
            RewardIssuance.workspace_id == workspace_id
        )
        if challenge_id:
            query = query.where(RewardIssuance.challenge_id == challenge_id)
        rows = session.execute(query).all()

    by_status = Counter(status for status, _ in rows)
    return {
        "total_rewards": len(rows),
        "total_issued": by_status[RewardStatus.ISSUED.value],
        "total_pending": by_status[RewardStatus.PENDING.value],
        "total_failed": by_status[RewardStatus.FAILED.value],
        "by_type": dict(Counter(kind for _, kind in rows)),
    }


# ---------------------------------------------------------------------------
# Outcome bookkeeping
# ---------------------------------------------------------------------------
def mark_reward_processing(engine: Engine, issuance_id: str) -> None:
    with Session(engine) as session:
        issuance = session.get(RewardIssuance, issuance_id)
        if issuance is None:
            raise ResourceNotFoundError("Reward", issuance_id)
        issuance.status = RewardStatus.PENDING.value
        issuance.reward_stack_status = RewardStackStatus.PROCESSING.value
        session.commit()


def mark_reward_result(
    engine: Engine,
    issuance_id: str,
    *,
    success: bool,
    transaction_id: str | None = None,
    adjustment_id: str | None = None,
    error: str | None = None,
) -> RewardIssuance:
    """Record the RewardSTACK outcome for an issuance."""
    with Session(engine, expire_on_commit=False) as session:
        issuance = session.get(RewardIssuance, issuance_id)
        if issuance is None:
            raise ResourceNotFoundError("Reward", issuance_id)
        if success:
            issuance.status = RewardStatus.ISSUED.value
            issuance.reward_stack_status = RewardStackStatus.COMPLETED.value
            issuance.issued_at = issuance.issued_at or datetime.now(UTC)
            issuance.error = None
            if transaction_id:
                issuance.reward_stack_transaction_id = transaction_id
            if adjustment_id:
                issuance.reward_stack_adjustment_id = adjustment_id
        else:
            issuance.status = RewardStatus.FAILED.value
            issuance.reward_stack_status = RewardStackStatus.FAILED.value
            issuance.error = error or "Unknown error"
        session.commit()
        session.refresh(issuance)
        session.expunge(issuance)
    return issuance


def retry_failed_rewards(
    engine: Engine, workspace_id: str, issuance_ids: Iterable[str] | None = None
) -> list[str]:
    """Move FAILED issuances back to PENDING and return their ids.

    With *issuance_ids*, only those (and only if FAILED) are requeued.
    """
    with Session(engine) as session:
        query = select(RewardIssuance).where(
            RewardIssuance.workspace_id == workspace_id,
            RewardIssuance.status == RewardStatus.FAILED.value,
        )
        if issuance_ids is not None:
            ids = list(issuance_ids)
            if not ids:
                raise ValidationError("No reward ids given")
            query = query.where(RewardIssuance.id.in_(ids))
        requeued = []
        for issuance in session.scalars(query).all():
            issuance.status = RewardStatus.PENDING.value
            issuance.reward_stack_status = RewardStackStatus.PENDING.value
            issuance.error = None
            requeued.append(issuance.id)
        session.commit()

    logger.info("Requeued %d failed rewards in %s", len(requeued), workspace_id)
    return requeued
