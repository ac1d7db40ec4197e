"""
changemaker.services.challenge_service — Challenges
====================================================

CRUD for challenges plus status changes and metrics.  Date rules are
enforced here (and again by a CHECK constraint on ``challenges``):

* ``end_date`` must be after ``start_date``
* ``enrollment_deadline`` defaults to ``start_date`` and may not fall
  after ``end_date``
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session, selectinload

from changemaker.database.models import (
    Activity,
    ActivityEventType,
    ActivitySubmission,
    Challenge,
    ChallengeStatus,
    Enrollment,
    EnrollmentStatus,
    RewardType,
    WorkspaceMembership,
)
from changemaker.engine.metrics import (
    ActivitySnapshot,
    ChallengeMetrics,
    EnrollmentSnapshot,
    LeaderboardEntry,
    SubmissionSnapshot,
    calculate_challenge_metrics,
    calculate_leaderboard,
)
from changemaker.errors import ResourceNotFoundError, ValidationError
from changemaker.services.event_service import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChallengeDates:
    start_date: datetime
    end_date: datetime
    enrollment_deadline: datetime


def parse_datetime(value: Any, field_name: str) -> datetime:
    """Accept a datetime or an ISO-8601 string; naive values are UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Invalid {field_name}") from exc
    else:
        raise ValidationError(f"{field_name} is required")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def validate_challenge_data(
    *,
    title: str | None,
    description: str | None,
    start_date: Any,
    end_date: Any,
    enrollment_deadline: Any = None,
) -> ChallengeDates:
    """Validate the user-supplied challenge fields and parse the dates.

    Raises
    ------
    ValidationError
        On a blank title / description, unparseable dates or a date order
        violation.
    """
    if not title or not title.strip():
        raise ValidationError("Title is required")
    if not description or not description.strip():
        raise ValidationError("Description is required")

    start = parse_datetime(start_date, "startDate")
    end = parse_datetime(end_date, "endDate")
    if end <= start:
        raise ValidationError("End date must be after start date")

    deadline = start
    if enrollment_deadline:
        deadline = parse_datetime(enrollment_deadline, "enrollmentDeadline")
        if deadline > end:
            raise ValidationError("Enrollment deadline cannot be after end date")
    return ChallengeDates(start_date=start, end_date=end, enrollment_deadline=deadline)


def _validate_reward(reward_type: str | None) -> str | None:
    if reward_type is None:
        return None
    if reward_type not in {r.value for r in RewardType}:
        raise ValidationError(f"Invalid reward type: {reward_type}")
    return reward_type


def _member_ids(session: Session, workspace_id: str, user_ids: Iterable[str]) -> set[str]:
    ids = set(user_ids)
    if not ids:
        return set()
    return set(session.scalars(
        select(WorkspaceMembership.user_id).where(
            WorkspaceMembership.workspace_id == workspace_id,
            WorkspaceMembership.user_id.in_(ids),
        )
    ).all())


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
def create_challenge(
    engine: Engine,
    workspace_id: str,
    *,
    title: str,
    description: str,
    start_date: Any,
    end_date: Any,
    enrollment_deadline: Any = None,
    reward_type: str | None = None,
    reward_config: dict | None = None,
    require_manager_approval: bool = False,
    invited_user_ids: Iterable[str] = (),
    enrolled_user_ids: Iterable[str] = (),
    actor_user_id: str | None = None,
) -> Challenge:
    """Create a DRAFT challenge, optionally inviting / enrolling members.

    A user listed in both *invited_user_ids* and *enrolled_user_ids* is
    enrolled.  Users who are not members of the workspace are rejected.
    """
    dates = validate_challenge_data(
        title=title,
        description=description,
        start_date=start_date,
        end_date=end_date,
        enrollment_deadline=enrollment_deadline,
    )
    reward_type = _validate_reward(reward_type)
    enrolled = list(dict.fromkeys(enrolled_user_ids))
    invited = [uid for uid in dict.fromkeys(invited_user_ids) if uid not in enrolled]

    with Session(engine, expire_on_commit=False) as session:
        members = _member_ids(session, workspace_id, [*invited, *enrolled])
        outsiders = [uid for uid in [*invited, *enrolled] if uid not in members]
        if outsiders:
            raise ValidationError("Some users are not members of this workspace")

        challenge = Challenge(
            workspace_id=workspace_id,
            title=title.strip(),
            description=description.strip(),
            start_date=dates.start_date,
            end_date=dates.end_date,
            enrollment_deadline=dates.enrollment_deadline,
            reward_type=reward_type,
            reward_config=reward_config,
            require_manager_approval=require_manager_approval,
        )
        session.add(challenge)
        session.flush()

        for uid in invited:
            session.add(Enrollment(
                user_id=uid, challenge_id=challenge.id, status=EnrollmentStatus.INVITED.value,
            ))
        for uid in enrolled:
            session.add(Enrollment(
                user_id=uid, challenge_id=challenge.id, status=EnrollmentStatus.ENROLLED.value,
            ))

        log_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.CHALLENGE_CREATED,
            challenge_id=challenge.id,
            actor_user_id=actor_user_id,
            metadata={
                "title": challenge.title,
                "invited_count": len(invited),
                "enrolled_count": len(enrolled),
            },
        )
        session.commit()
        session.refresh(challenge)
        session.expunge(challenge)

    logger.info("Challenge %r created in workspace %s", challenge.title, workspace_id)
    return challenge


def get_challenge(engine: Engine, workspace_id: str, challenge_id: str) -> Challenge:
    """Load a challenge, scoped to *workspace_id*."""
    with Session(engine) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)
        session.expunge(challenge)
        return challenge


def update_challenge(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    updates: dict[str, Any],
    *,
    actor_user_id: str | None = None,
) -> Challenge:
    """Apply a partial update; the merged result is re-validated."""
    with Session(engine, expire_on_commit=False) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)

        title = updates.get("title", challenge.title)
        description = updates.get("description", challenge.description)
        dates = validate_challenge_data(
            title=title,
            description=description,
            start_date=updates.get("start_date", challenge.start_date),
            end_date=updates.get("end_date", challenge.end_date),
            enrollment_deadline=updates.get("enrollment_deadline", challenge.enrollment_deadline),
        )

        challenge.title = title.strip()
        challenge.description = description.strip()
        challenge.start_date = dates.start_date
        challenge.end_date = dates.end_date
        challenge.enrollment_deadline = dates.enrollment_deadline
        if "reward_type" in updates:
            challenge.reward_type = _validate_reward(updates["reward_type"])
        if "reward_config" in updates:
            challenge.reward_config = updates["reward_config"]
        if "require_manager_approval" in updates:
            challenge.require_manager_approval = bool(updates["require_manager_approval"])

        log_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.CHALLENGE_UPDATED,
            challenge_id=challenge.id,
            actor_user_id=actor_user_id,
            metadata={"fields": sorted(updates)},
        )
        session.commit()
        session.refresh(challenge)
        session.expunge(challenge)
        return challenge


def delete_challenge(engine: Engine, workspace_id: str, challenge_id: str) -> None:
    """Delete a challenge with its enrollments, activities and submissions."""
    with Session(engine) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)
        session.delete(challenge)
        session.commit()
    logger.info("Challenge %s deleted from workspace %s", challenge_id, workspace_id)


_STATUS_EVENTS = {
    ChallengeStatus.PUBLISHED: ActivityEventType.CHALLENGE_PUBLISHED,
    ChallengeStatus.DRAFT: ActivityEventType.CHALLENGE_UNPUBLISHED,
    ChallengeStatus.ARCHIVED: ActivityEventType.CHALLENGE_ARCHIVED,
}


def set_challenge_status(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    status: str,
    *,
    actor_user_id: str | None = None,
) -> Challenge:
    try:
        new_status = ChallengeStatus(status)
    except ValueError as exc:
        raise ValidationError(f"Invalid challenge status: {status}") from exc

    with Session(engine, expire_on_commit=False) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)
        previous = challenge.status
        if previous != new_status:
            challenge.status = new_status.value
            log_event(
                session,
                workspace_id=workspace_id,
                type=_STATUS_EVENTS[new_status],
                challenge_id=challenge.id,
                actor_user_id=actor_user_id,
                metadata={"from": previous, "to": new_status.value},
            )
        session.commit()
        session.refresh(challenge)
        session.expunge(challenge)
        return challenge


def list_challenges(
    engine: Engine,
    workspace_id: str,
    *,
    user_id: str | None = None,
    status: str | None = None,
) -> list[tuple[Challenge, Enrollment | None]]:
    """Challenges newest first, each paired with *user_id*'s enrollment."""
    with Session(engine) as session:
        query = (
            select(Challenge)
            .where(Challenge.workspace_id == workspace_id)
            .order_by(Challenge.created_at.desc())
        )
        if status:
            query = query.where(Challenge.status == status)
        challenges = list(session.scalars(query).all())

        mine: dict[str, Enrollment] = {}
        if user_id and challenges:
            for enrollment in session.scalars(
                select(Enrollment).where(
                    Enrollment.user_id == user_id,
                    Enrollment.challenge_id.in_([c.id for c in challenges]),
                )
            ).all():
                mine[enrollment.challenge_id] = enrollment

        result = []
        for challenge in challenges:
            enrollment = mine.get(challenge.id)
            session.expunge(challenge)
            if enrollment is not None:
                session.expunge(enrollment)
            result.append((challenge, enrollment))
        return result


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
def _activity_snapshots(session: Session, challenge_id: str) -> list[ActivitySnapshot]:
    activities = session.scalars(
        select(Activity)
        .where(Activity.challenge_id == challenge_id)
        .options(selectinload(Activity.submissions).selectinload(ActivitySubmission.user))
        .order_by(Activity.created_at)
    ).all()
    return [
        ActivitySnapshot(
            id=activity.id,
            points_value=activity.points_value,
            submissions=tuple(
                SubmissionSnapshot(
                    id=sub.id,
                    user_id=sub.user_id,
                    status=sub.status,
                    points_awarded=sub.points_awarded,
                    submitted_at=sub.submitted_at,
                    email=sub.user.email,
                    display_name=sub.user.display_name,
                )
                for sub in sorted(activity.submissions, key=lambda s: s.submitted_at)
            ),
        )
        for activity in activities
    ]


def get_challenge_metrics(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    *,
    stalled_after: timedelta = timedelta(days=7),
    leaderboard_limit: int = 5,
) -> tuple[ChallengeMetrics, list[LeaderboardEntry]]:
    """Dashboard metrics and the top-N leaderboard for one challenge."""
    with Session(engine) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)
        enrollments = [
            EnrollmentSnapshot(user_id=e.user_id, status=e.status, created_at=e.created_at)
            for e in session.scalars(
                select(Enrollment).where(Enrollment.challenge_id == challenge_id)
            ).all()
        ]
        activities = _activity_snapshots(session, challenge_id)

    metrics = calculate_challenge_metrics(enrollments, activities, stalled_after=stalled_after)
    return metrics, calculate_leaderboard(activities, limit=leaderboard_limit)
