"""
changemaker.services.points_service — Points, Budgets & Leaderboards
=====================================================================

Points awards are booked in three places inside one transaction:

1. the allocation counter of the challenge budget (or, when the challenge
   has none, the workspace budget; no budget at all is allowed),
2. the recipient's ``points_balances`` row (upserted), and
3. an append-only ``points_ledger`` row.

Budgets track allocation only; awarding past ``total_budget`` is not
blocked.  The session-level helpers let reviews and reward issuance award
points atomically with their own writes.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.models import (
    Activity,
    ActivityEvent,
    ActivitySubmission,
    Challenge,
    ChallengePointsBudget,
    Enrollment,
    EnrollmentStatus,
    PointsBalance,
    PointsLedger,
    User,
    WorkspacePointsBudget,
)
from changemaker.engine.metrics import (
    ActivityCountEntry,
    ActivityCountStats,
    ActivityEventSnapshot,
    ChallengeRanking,
    ParticipantStanding,
    SubmissionSnapshot,
    period_start,
    rank_by_activity_count,
    rank_challenge_participants,
)
from changemaker.errors import ResourceNotFoundError, ValidationError

logger = logging.getLogger(__name__)

AWARD_APPROVED = "AWARD_APPROVED"


# ---------------------------------------------------------------------------
# Balances & awards
# ---------------------------------------------------------------------------
def get_or_create_balance(session: Session, user_id: str, workspace_id: str) -> PointsBalance:
    balance = session.scalar(
        select(PointsBalance).where(
            PointsBalance.user_id == user_id, PointsBalance.workspace_id == workspace_id
        )
    )
    if balance is None:
        balance = PointsBalance(
            user_id=user_id, workspace_id=workspace_id, total_points=0, available_points=0
        )
        session.add(balance)
        session.flush()
    return balance


def award_points_with_budget(
    session: Session,
    *,
    workspace_id: str,
    to_user_id: str,
    amount: int,
    challenge_id: str | None = None,
    submission_id: str | None = None,
    actor_user_id: str | None = None,
) -> PointsBalance:
    """Book a points award in the caller's session (not committed here)."""
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError("Invalid award amount")

    budget: ChallengePointsBudget | WorkspacePointsBudget | None = None
    if challenge_id:
        budget = session.get(ChallengePointsBudget, challenge_id)
    if budget is None:
        budget = session.get(WorkspacePointsBudget, workspace_id)
    if budget is not None:
        budget.allocated = (budget.allocated or 0) + amount

    balance = get_or_create_balance(session, to_user_id, workspace_id)
    balance.total_points = (balance.total_points or 0) + amount
    balance.available_points = (balance.available_points or 0) + amount

    session.add(PointsLedger(
        workspace_id=workspace_id,
        challenge_id=challenge_id,
        to_user_id=to_user_id,
        amount=amount,
        submission_id=submission_id,
        actor_user_id=actor_user_id,
        reason=AWARD_APPROVED,
    ))
    logger.debug("Awarded %d points to %s in %s", amount, to_user_id, workspace_id)
    return balance


def get_user_balance(engine: Engine, user_id: str, workspace_id: str) -> dict[str, int]:
    with Session(engine) as session:
        balance = session.scalar(
            select(PointsBalance).where(
                PointsBalance.user_id == user_id, PointsBalance.workspace_id == workspace_id
            )
        )
        if balance is None:
            return {"total_points": 0, "available_points": 0}
        return {
            "total_points": balance.total_points,
            "available_points": balance.available_points,
        }


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------
def get_workspace_budget(engine: Engine, workspace_id: str) -> WorkspacePointsBudget | None:
    with Session(engine) as session:
        budget = session.get(WorkspacePointsBudget, workspace_id)
        if budget is not None:
            session.expunge(budget)
        return budget


def upsert_workspace_budget(
    engine: Engine, workspace_id: str, total_budget: int, updated_by: str | None = None
) -> WorkspacePointsBudget:
    with Session(engine, expire_on_commit=False) as session:
        budget = session.get(WorkspacePointsBudget, workspace_id)
        if budget is None:
            budget = WorkspacePointsBudget(workspace_id=workspace_id, allocated=0)
            session.add(budget)
        budget.total_budget = max(0, int(total_budget))
        budget.updated_by = updated_by
        session.commit()
        session.refresh(budget)
        session.expunge(budget)
        return budget


def get_challenge_budget(engine: Engine, challenge_id: str) -> ChallengePointsBudget | None:
    with Session(engine) as session:
        budget = session.get(ChallengePointsBudget, challenge_id)
        if budget is not None:
            session.expunge(budget)
        return budget


def upsert_challenge_budget(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    total_budget: int,
    updated_by: str | None = None,
) -> ChallengePointsBudget:
    with Session(engine, expire_on_commit=False) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)
        budget = session.get(ChallengePointsBudget, challenge_id)
        if budget is None:
            budget = ChallengePointsBudget(
                challenge_id=challenge_id, workspace_id=workspace_id, allocated=0
            )
            session.add(budget)
        budget.total_budget = max(0, int(total_budget))
        budget.updated_by = updated_by
        session.commit()
        session.refresh(budget)
        session.expunge(budget)
        return budget


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------
def workspace_points_leaderboard(engine: Engine, workspace_id: str, limit: int = 10) -> list[dict]:
    """Balances by total points, highest first."""
    with Session(engine) as session:
        rows = session.execute(
            select(PointsBalance, User)
            .join(User, User.id == PointsBalance.user_id)
            .where(PointsBalance.workspace_id == workspace_id)
            .order_by(PointsBalance.total_points.desc())
            .limit(limit)
        ).all()
        return [
            {
                "user_id": user.id,
                "email": user.email,
                "display_name": user.display_name,
                "total_points": balance.total_points,
                "available_points": balance.available_points,
            }
            for balance, user in rows
        ]


def challenge_leaderboard(
    engine: Engine, workspace_id: str, challenge_id: str, limit: int = 10
) -> list[ChallengeRanking]:
    """Rank enrolled participants by approved points, then completed activities."""
    with Session(engine) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)

        enrolled = session.execute(
            select(User)
            .join(Enrollment, Enrollment.user_id == User.id)
            .where(
                Enrollment.challenge_id == challenge_id,
                Enrollment.status.in_(
                    [EnrollmentStatus.ENROLLED.value, EnrollmentStatus.COMPLETED.value]
                ),
            )
            .order_by(Enrollment.created_at)
        ).scalars().all()

        submissions: dict[str, list[tuple[str, SubmissionSnapshot]]] = {}
        for sub in session.scalars(
            select(ActivitySubmission)
            .join(Activity, Activity.id == ActivitySubmission.activity_id)
            .where(Activity.challenge_id == challenge_id)
            .order_by(ActivitySubmission.submitted_at)
        ).all():
            submissions.setdefault(sub.user_id, []).append((
                sub.activity_id,
                SubmissionSnapshot(
                    id=sub.id,
                    user_id=sub.user_id,
                    status=sub.status,
                    points_awarded=sub.points_awarded,
                    submitted_at=sub.submitted_at,
                ),
            ))

        standings = [
            ParticipantStanding(
                user_id=user.id,
                email=user.email,
                display_name=user.display_name,
                submissions=tuple(submissions.get(user.id, ())),
            )
            for user in enrolled
        ]
    return rank_challenge_participants(standings, limit=limit)


def activity_leaderboard(
    engine: Engine,
    workspace_id: str,
    *,
    period: str | None = "all",
    challenge_id: str | None = None,
) -> tuple[list[ActivityCountEntry], ActivityCountStats]:
    """Count challenge activity events per user over *period*."""
    since = period_start(period)
    with Session(engine) as session:
        query = (
            select(
                User.id,
                User.email,
                User.first_name,
                User.last_name,
                User.display_name,
                User.is_pending,
            )
            .join(ActivityEvent, ActivityEvent.user_id == User.id)
            .join(Challenge, Challenge.id == ActivityEvent.challenge_id)
            .where(Challenge.workspace_id == workspace_id)
            .order_by(ActivityEvent.created_at)
        )
        if since is not None:
            query = query.where(ActivityEvent.created_at >= since)
        if challenge_id and challenge_id != "all":
            query = query.where(ActivityEvent.challenge_id == challenge_id)
        events = [
            ActivityEventSnapshot(
                user_id=row.id,
                email=row.email,
                first_name=row.first_name,
                last_name=row.last_name,
                display_name=row.display_name,
                is_pending=row.is_pending,
            )
            for row in session.execute(query).all()
        ]
    return rank_by_activity_count(events)
