"""
changemaker.services.enrollment_service — Challenge Enrollment
===============================================================

Enrollment status only moves along explicit transitions::

    INVITED ──▶ ENROLLED ──▶ COMPLETED
       │           │  ▲
       └──▶ WITHDRAWN ┘

Completing an enrollment in a RewardSTACK-enabled workspace queues the
challenge's completion reward (once per user and challenge).  Queuing is
best-effort: a failure is logged and the status change still commits.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session, selectinload

from changemaker.database.models import (
    ActivityEventType,
    Challenge,
    ChallengeStatus,
    Enrollment,
    EnrollmentStatus,
    WorkspaceMembership,
)
from changemaker.errors import (
    ConflictError,
    ResourceNotFoundError,
    ValidationError,
    WorkspaceAccessError,
)
from changemaker.services import reward_service
from changemaker.services.event_service import log_event

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[EnrollmentStatus, frozenset[EnrollmentStatus]] = {
    EnrollmentStatus.INVITED: frozenset({EnrollmentStatus.ENROLLED, EnrollmentStatus.WITHDRAWN}),
    EnrollmentStatus.ENROLLED: frozenset({EnrollmentStatus.WITHDRAWN, EnrollmentStatus.COMPLETED}),
    EnrollmentStatus.WITHDRAWN: frozenset({EnrollmentStatus.ENROLLED}),
    EnrollmentStatus.COMPLETED: frozenset(),
}

_TRANSITION_EVENTS = {
    EnrollmentStatus.ENROLLED: ActivityEventType.ENROLLED,
    EnrollmentStatus.WITHDRAWN: ActivityEventType.UNENROLLED,
    EnrollmentStatus.COMPLETED: ActivityEventType.ENROLLMENT_COMPLETED,
}


def _status(value: str) -> EnrollmentStatus:
    try:
        return EnrollmentStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid enrollment status: {value}") from exc


def check_transition(current: str, target: str) -> EnrollmentStatus:
    """Return the target status, or raise if the move is not allowed."""
    new = _status(target)
    if new not in ALLOWED_TRANSITIONS[_status(current)]:
        raise ValidationError(f"Cannot change enrollment from {current} to {new.value}")
    return new


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _is_member(session: Session, user_id: str, workspace_id: str) -> bool:
    return session.scalar(
        select(WorkspaceMembership.id).where(
            WorkspaceMembership.user_id == user_id,
            WorkspaceMembership.workspace_id == workspace_id,
        )
    ) is not None


def _load_challenge(session: Session, workspace_id: str, challenge_id: str) -> Challenge:
    challenge = session.get(Challenge, challenge_id)
    if challenge is None or challenge.workspace_id != workspace_id:
        raise ResourceNotFoundError("Challenge", challenge_id)
    return challenge


def _load_enrollment(session: Session, workspace_id: str, enrollment_id: str) -> Enrollment:
    enrollment = session.get(Enrollment, enrollment_id)
    if enrollment is None or enrollment.challenge.workspace_id != workspace_id:
        raise ResourceNotFoundError("Enrollment", enrollment_id)
    return enrollment


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
def create_enrollment(
    engine: Engine,
    workspace_id: str,
    *,
    user_id: str,
    challenge_id: str,
    status: str = EnrollmentStatus.ENROLLED.value,
    actor_user_id: str | None = None,
) -> Enrollment:
    """Enroll (or invite) one member into a challenge.

    Raises
    ------
    WorkspaceAccessError
        If the user is not a workspace member.
    ValidationError
        Archived challenge, passed deadline or a non-initial status.
    ConflictError
        If the user already has an enrollment for the challenge.
    """
    initial = _status(status)
    if initial not in (EnrollmentStatus.INVITED, EnrollmentStatus.ENROLLED):
        raise ValidationError("New enrollments must be INVITED or ENROLLED")

    with Session(engine, expire_on_commit=False) as session:
        if not _is_member(session, user_id, workspace_id):
            raise WorkspaceAccessError("User is not a member of this workspace")
        challenge = _load_challenge(session, workspace_id, challenge_id)
        if challenge.status == ChallengeStatus.ARCHIVED:
            raise ValidationError("Cannot enroll in an archived challenge")
        if challenge.enrollment_deadline and _aware(challenge.enrollment_deadline) < datetime.now(UTC):
            raise ValidationError("Enrollment deadline has passed")
        exists = session.scalar(
            select(Enrollment.id).where(
                Enrollment.user_id == user_id, Enrollment.challenge_id == challenge_id
            )
        )
        if exists:
            raise ConflictError("User is already enrolled in this challenge")

        enrollment = Enrollment(user_id=user_id, challenge_id=challenge_id, status=initial.value)
        session.add(enrollment)
        session.flush()
        log_event(
            session,
            workspace_id=workspace_id,
            type=(ActivityEventType.ENROLLED if initial is EnrollmentStatus.ENROLLED
                  else ActivityEventType.INVITE_SENT),
            challenge_id=challenge_id,
            enrollment_id=enrollment.id,
            user_id=user_id,
            actor_user_id=actor_user_id,
        )
        session.commit()
        session.refresh(enrollment)
        session.expunge(enrollment)

    logger.info("User %s %s in challenge %s", user_id, initial.value.lower(), challenge_id)
    return enrollment


def create_challenge_enrollments(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    user_ids: Iterable[str],
    *,
    status: str = EnrollmentStatus.INVITED.value,
    actor_user_id: str | None = None,
) -> list[Enrollment]:
    """Bulk-create enrollments; users already enrolled are skipped."""
    initial = _status(status)
    if initial not in (EnrollmentStatus.INVITED, EnrollmentStatus.ENROLLED):
        raise ValidationError("New enrollments must be INVITED or ENROLLED")
    user_ids = list(dict.fromkeys(user_ids))

    with Session(engine, expire_on_commit=False) as session:
        _load_challenge(session, workspace_id, challenge_id)
        members = set(session.scalars(
            select(WorkspaceMembership.user_id).where(
                WorkspaceMembership.workspace_id == workspace_id,
                WorkspaceMembership.user_id.in_(user_ids),
            )
        ).all())
        if len(members) != len(user_ids):
            raise ValidationError("Some users are not members of this workspace")

        existing = set(session.scalars(
            select(Enrollment.user_id).where(
                Enrollment.challenge_id == challenge_id, Enrollment.user_id.in_(user_ids)
            )
        ).all())
        created = []
        for uid in user_ids:
            if uid in existing:
                continue
            enrollment = Enrollment(user_id=uid, challenge_id=challenge_id, status=initial.value)
            session.add(enrollment)
            created.append(enrollment)
        session.flush()
        for enrollment in created:
            log_event(
                session,
                workspace_id=workspace_id,
                type=(ActivityEventType.ENROLLED if initial is EnrollmentStatus.ENROLLED
                      else ActivityEventType.INVITE_SENT),
                challenge_id=challenge_id,
                enrollment_id=enrollment.id,
                user_id=enrollment.user_id,
                actor_user_id=actor_user_id,
            )
        session.commit()
        for enrollment in created:
            session.refresh(enrollment)
            session.expunge(enrollment)

    logger.info(
        "Bulk enrollment for challenge %s: %d created, %d skipped",
        challenge_id, len(created), len(user_ids) - len(created),
    )
    return created


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------
def update_enrollment_status(
    engine: Engine,
    workspace_id: str,
    enrollment_id: str,
    status: str,
    *,
    actor_user_id: str | None = None,
) -> tuple[Enrollment, str | None]:
    """Move an enrollment to *status*.

    Returns ``(enrollment, reward_issuance_id)``; the id is set when
    completion queued a RewardSTACK reward that the caller should submit.
    """
    with Session(engine, expire_on_commit=False) as session:
        enrollment = _load_enrollment(session, workspace_id, enrollment_id)
        previous = enrollment.status
        new = check_transition(previous, status)

        enrollment.status = new.value
        if new is EnrollmentStatus.COMPLETED:
            enrollment.completed_at = datetime.now(UTC)
        log_event(
            session,
            workspace_id=workspace_id,
            type=_TRANSITION_EVENTS[new],
            challenge_id=enrollment.challenge_id,
            enrollment_id=enrollment.id,
            user_id=enrollment.user_id,
            actor_user_id=actor_user_id,
            metadata={"from": previous, "to": new.value},
        )
        session.commit()
        session.refresh(enrollment)
        session.expunge(enrollment)

    issuance_id = None
    if new is EnrollmentStatus.COMPLETED:
        try:
            issuance_id = reward_service.create_completion_reward(
                engine,
                user_id=enrollment.user_id,
                challenge_id=enrollment.challenge_id,
                enrollment_id=enrollment.id,
            )
        except Exception:
            logger.exception("Failed to queue completion reward for enrollment %s", enrollment.id)
    return enrollment, issuance_id


def withdraw(
    engine: Engine, workspace_id: str, enrollment_id: str, *, actor_user_id: str | None = None
) -> Enrollment:
    enrollment, _ = update_enrollment_status(
        engine,
        workspace_id,
        enrollment_id,
        EnrollmentStatus.WITHDRAWN.value,
        actor_user_id=actor_user_id,
    )
    return enrollment


def delete_enrollment(
    engine: Engine, workspace_id: str, enrollment_id: str, *, actor_user_id: str | None = None
) -> None:
    with Session(engine) as session:
        enrollment = _load_enrollment(session, workspace_id, enrollment_id)
        log_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.UNENROLLED,
            challenge_id=enrollment.challenge_id,
            user_id=enrollment.user_id,
            actor_user_id=actor_user_id,
            metadata={"deleted": True, "previous_status": enrollment.status},
        )
        session.delete(enrollment)
        session.commit()


def get_enrollment(engine: Engine, workspace_id: str, enrollment_id: str) -> Enrollment:
    with Session(engine) as session:
        enrollment = _load_enrollment(session, workspace_id, enrollment_id)
        session.expunge(enrollment)
        return enrollment


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------
def _detached(session: Session, rows: list[Enrollment]) -> list[Enrollment]:
    # rows may share a challenge or user, so detach everything at once
    session.expunge_all()
    return rows


def list_user_enrollments(engine: Engine, workspace_id: str, user_id: str) -> list[Enrollment]:
    """The user's enrollments in *workspace_id* with ``.challenge`` loaded."""
    with Session(engine) as session:
        rows = list(session.scalars(
            select(Enrollment)
            .join(Challenge, Challenge.id == Enrollment.challenge_id)
            .where(Enrollment.user_id == user_id, Challenge.workspace_id == workspace_id)
            .options(selectinload(Enrollment.challenge), selectinload(Enrollment.user))
            .order_by(Enrollment.created_at.desc())
        ).all())
        return _detached(session, rows)


def list_workspace_enrollments(engine: Engine, workspace_id: str) -> list[Enrollment]:
    with Session(engine) as session:
        rows = list(session.scalars(
            select(Enrollment)
            .join(Challenge, Challenge.id == Enrollment.challenge_id)
            .where(Challenge.workspace_id == workspace_id)
            .options(selectinload(Enrollment.challenge), selectinload(Enrollment.user))
            .order_by(Enrollment.created_at.desc())
        ).all())
        return _detached(session, rows)


def list_challenge_enrollments(
    engine: Engine, workspace_id: str, challenge_id: str
) -> list[Enrollment]:
    with Session(engine) as session:
        _load_challenge(session, workspace_id, challenge_id)
        rows = list(session.scalars(
            select(Enrollment)
            .where(Enrollment.challenge_id == challenge_id)
            .options(selectinload(Enrollment.challenge), selectinload(Enrollment.user))
            .order_by(Enrollment.created_at)
        ).all())
        return _detached(session, rows)
