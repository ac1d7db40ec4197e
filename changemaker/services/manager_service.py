"""
changemaker.services.manager_service — Challenge Managers & Manager Review
===========================================================================

Admins assign workspace MANAGERs (or other ADMINs) to a challenge.  An
assigned manager gives the first review of that challenge's PENDING
submissions:

* ``approve`` → MANAGER_APPROVED, waiting for the admin's final review.
* ``reject``  → NEEDS_REVISION; the participant may submit again.

Challenges with ``require_manager_approval`` cannot have a PENDING
submission approved by an admin directly (see
:func:`changemaker.services.activity_service.review_submission`).
Workspace ADMINs may manager-review any challenge without an assignment.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from changemaker.database.models import (
    Activity,
    ActivityEventType,
    ActivitySubmission,
    Challenge,
    ChallengeAssignment,
    Role,
    SubmissionStatus,
    WorkspaceMembership,
)
from changemaker.errors import (
    ConflictError,
    ResourceNotFoundError,
    ValidationError,
    WorkspaceAccessError,
)
from changemaker.services.activity_service import REVIEW_ACTIONS, submission_query
from changemaker.services.event_service import log_event

logger = logging.getLogger(__name__)

REVIEWER_ROLES = (Role.ADMIN.value, Role.MANAGER.value)


def _member_role(session: Session, user_id: str, workspace_id: str) -> str | None:
    return session.scalar(
        select(WorkspaceMembership.role).where(
            WorkspaceMembership.user_id == user_id,
            WorkspaceMembership.workspace_id == workspace_id,
        )
    )


def _workspace_challenge(session: Session, workspace_id: str, challenge_id: str) -> Challenge:
    challenge = session.get(Challenge, challenge_id)
    if challenge is None or challenge.workspace_id != workspace_id:
        raise ResourceNotFoundError("Challenge", challenge_id)
    return challenge


def _is_assigned(session: Session, challenge_id: str, manager_id: str) -> bool:
    return session.scalar(
        select(ChallengeAssignment.id).where(
            ChallengeAssignment.challenge_id == challenge_id,
            ChallengeAssignment.manager_id == manager_id,
        )
    ) is not None


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------
def assign_manager(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    *,
    manager_id: str,
    assigned_by: str | None = None,
) -> ChallengeAssignment:
    """Assign a MANAGER or ADMIN member to review *challenge_id*.

    Raises
    ------
    WorkspaceAccessError
        The user is not a member of the workspace.
    ValidationError
        The member is a PARTICIPANT.
    ConflictError
        Already assigned.
    """
    with Session(engine, expire_on_commit=False) as session:
        _workspace_challenge(session, workspace_id, challenge_id)
        role = _member_role(session, manager_id, workspace_id)
        if role is None:
            raise WorkspaceAccessError("User is not a member of this workspace")
        if role not in REVIEWER_ROLES:
            raise ValidationError("Only managers or admins can be assigned to a challenge")
        if _is_assigned(session, challenge_id, manager_id):
            raise ConflictError("Manager is already assigned to this challenge")

        assignment = ChallengeAssignment(
            challenge_id=challenge_id,
            manager_id=manager_id,
            workspace_id=workspace_id,
            assigned_by=assigned_by,
        )
        session.add(assignment)
        log_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.MANAGER_ASSIGNED,
            challenge_id=challenge_id,
            user_id=manager_id,
            actor_user_id=assigned_by,
        )
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("Manager is already assigned to this challenge") from exc
        session.refresh(assignment)
        session.expunge(assignment)

    logger.info("Manager %s assigned to challenge %s", manager_id, challenge_id)
    return assignment


def unassign_manager(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    manager_id: str,
    *,
    actor_user_id: str | None = None,
) -> None:
    with Session(engine) as session:
        assignment = session.scalar(
            select(ChallengeAssignment).where(
                ChallengeAssignment.workspace_id == workspace_id,
                ChallengeAssignment.challenge_id == challenge_id,
                ChallengeAssignment.manager_id == manager_id,
            )
        )
        if assignment is None:
            raise ResourceNotFoundError("Assignment", manager_id)
        session.delete(assignment)
        log_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.MANAGER_UNASSIGNED,
            challenge_id=challenge_id,
            user_id=manager_id,
            actor_user_id=actor_user_id,
        )
        session.commit()
    logger.info("Manager %s removed from challenge %s", manager_id, challenge_id)


def list_challenge_managers(
    engine: Engine, workspace_id: str, challenge_id: str
) -> list[ChallengeAssignment]:
    """Assignments for one challenge with ``.manager`` loaded."""
    with Session(engine) as session:
        _workspace_challenge(session, workspace_id, challenge_id)
        rows = list(session.scalars(
            select(ChallengeAssignment)
            .where(ChallengeAssignment.challenge_id == challenge_id)
            .options(selectinload(ChallengeAssignment.manager))
            .order_by(ChallengeAssignment.assigned_at)
        ).all())
        session.expunge_all()
        return rows


def assigned_challenge_ids(engine: Engine, workspace_id: str, manager_id: str) -> list[str]:
    with Session(engine) as session:
        return list(session.scalars(
            select(ChallengeAssignment.challenge_id).where(
                ChallengeAssignment.workspace_id == workspace_id,
                ChallengeAssignment.manager_id == manager_id,
            )
        ).all())


# ---------------------------------------------------------------------------
# Queue & review
# ---------------------------------------------------------------------------
def list_manager_queue(
    engine: Engine, workspace_id: str, manager_id: str, *, status: str | None = None
) -> list[ActivitySubmission]:
    """Submissions of the manager's assigned challenges, newest first."""
    if status is not None:
        try:
            status = SubmissionStatus(status.upper()).value
        except ValueError as exc:
            raise ValidationError(f"Invalid submission status: {status}") from exc

    challenge_ids = assigned_challenge_ids(engine, workspace_id, manager_id)
    if not challenge_ids:
        return []

    with Session(engine) as session:
        query = submission_query(workspace_id).where(Activity.challenge_id.in_(challenge_ids))
        if status is not None:
            query = query.where(ActivitySubmission.status == status)
        rows = list(session.scalars(query.order_by(ActivitySubmission.submitted_at.desc())).all())
        session.expunge_all()
        return rows


def manager_review_submission(
    engine: Engine,
    workspace_id: str,
    submission_id: str,
    *,
    action: str,
    reviewer_id: str,
    notes: str | None = None,
) -> ActivitySubmission:
    """First-line review of a PENDING submission.

    Raises
    ------
    ValidationError
        Unknown action, or the submission is no longer PENDING.
    WorkspaceAccessError
        Reviewer is not a manager/admin, reviews their own submission, or
        (as a MANAGER) is not assigned to the challenge.
    """
    if action not in REVIEW_ACTIONS:
        raise ValidationError("action must be 'approve' or 'reject'")

    with Session(engine, expire_on_commit=False) as session:
        submission = session.get(ActivitySubmission, submission_id)
        if submission is None:
            raise ResourceNotFoundError("Submission", submission_id)
        challenge = submission.activity.challenge
        if challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Submission", submission_id)

        role = _member_role(session, reviewer_id, workspace_id)
        if role not in REVIEWER_ROLES:
            raise WorkspaceAccessError("Manager access required")
        if submission.user_id == reviewer_id:
            raise WorkspaceAccessError("You cannot approve your own submission")
        if role == Role.MANAGER and not _is_assigned(session, challenge.id, reviewer_id):
            raise WorkspaceAccessError("You are not assigned to review this challenge")
        if submission.status != SubmissionStatus.PENDING:
            raise ValidationError("Only pending submissions can be manager-reviewed")

        if action == "approve":
            submission.status = SubmissionStatus.MANAGER_APPROVED.value
            event_type = ActivityEventType.SUBMISSION_MANAGER_APPROVED
        else:
            submission.status = SubmissionStatus.NEEDS_REVISION.value
            event_type = ActivityEventType.SUBMISSION_NEEDS_REVISION
        submission.manager_notes = notes
        submission.manager_reviewed_by = reviewer_id
        submission.manager_reviewed_at = datetime.now(UTC)

        log_event(
            session,
            workspace_id=workspace_id,
            type=event_type,
            challenge_id=challenge.id,
            enrollment_id=submission.enrollment_id,
            user_id=submission.user_id,
            actor_user_id=reviewer_id,
            metadata={"submission_id": submission.id, "notes": notes},
        )
        session.commit()
        session.refresh(submission)
        session.expunge(submission)

    logger.info("Submission %s manager-reviewed (%s) by %s", submission_id, action, reviewer_id)
    return submission
