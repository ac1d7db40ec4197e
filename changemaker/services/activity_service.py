"""
changemaker.services.activity_service — Templates, Activities & Submissions
============================================================================

* **Templates** are reusable task definitions owned by a workspace.
* **Activities** place a template into one challenge, optionally
  overriding its points value and submission limit.
* **Submissions** are participant work.  Admins review PENDING (or
  MANAGER_APPROVED, see :mod:`~changemaker.services.manager_service`)
  submissions; approval books the reward configured on the template.

When RewardSTACK is disabled, an approved points reward is settled
locally (balance credited, issuance ISSUED).  Otherwise the issuance stays
PENDING and :func:`review_submission` returns its id so the caller can
submit it.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session, selectinload

from changemaker.database.models import (
    Activity,
    ActivityEventType,
    ActivitySubmission,
    ActivityTemplate,
    ActivityType,
    Challenge,
    Enrollment,
    EnrollmentStatus,
    RewardStatus,
    RewardType,
    SubmissionStatus,
    Workspace,
)
from changemaker.engine.rewards import ResolvedReward, resolve_submission_reward
from changemaker.errors import ResourceNotFoundError, ValidationError
from changemaker.services.event_service import log_event
from changemaker.services.reward_service import add_issuance

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = ("approve", "reject")

# Submissions that do not use up an activity's submission limit
_NOT_COUNTED = (SubmissionStatus.DRAFT.value, SubmissionStatus.NEEDS_REVISION.value)

# Statuses an admin can give the final review to
AWAITING_REVIEW = (SubmissionStatus.PENDING.value, SubmissionStatus.MANAGER_APPROVED.value)


def _activity_type(value: str) -> str:
    try:
        return ActivityType(value).value
    except ValueError as exc:
        raise ValidationError(f"Invalid activity type: {value}") from exc


def _reward_type(value: str | None) -> str | None:
    if value is None:
        return None
    if value not in {r.value for r in RewardType}:
        raise ValidationError(f"Invalid reward type: {value}")
    return value


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------
def _load_template(session: Session, workspace_id: str, template_id: str) -> ActivityTemplate:
    template = session.get(ActivityTemplate, template_id)
    if template is None or template.workspace_id != workspace_id:
        raise ResourceNotFoundError("Activity template", template_id)
    return template


def create_template(
    engine: Engine,
    workspace_id: str,
    *,
    name: str,
    type: str,
    description: str = "",
    base_points: int = 0,
    requires_approval: bool = True,
    allow_multiple: bool = False,
    reward_type: str | None = None,
    reward_config: dict | None = None,
) -> ActivityTemplate:
    if not name or not name.strip():
        raise ValidationError("Template name is required")
    if base_points < 0:
        raise ValidationError("Base points cannot be negative")
    template = ActivityTemplate(
        workspace_id=workspace_id,
        name=name.strip(),
        description=(description or "").strip(),
        type=_activity_type(type),
        base_points=base_points,
        requires_approval=requires_approval,
        allow_multiple=allow_multiple,
        reward_type=_reward_type(reward_type),
        reward_config=reward_config,
    )
    with Session(engine, expire_on_commit=False) as session:
        session.add(template)
        session.commit()
        session.refresh(template)
        session.expunge(template)
    return template


_TEMPLATE_FIELDS = (
    "name", "description", "type", "base_points", "requires_approval",
    "allow_multiple", "reward_type", "reward_config",
)


def update_template(
    engine: Engine, workspace_id: str, template_id: str, updates: dict[str, Any]
) -> ActivityTemplate:
    with Session(engine, expire_on_commit=False) as session:
        template = _load_template(session, workspace_id, template_id)
        for key in _TEMPLATE_FIELDS:
            if key not in updates:
                continue
            value = updates[key]
            if key == "name":
                if not value or not value.strip():
                    raise ValidationError("Template name is required")
                value = value.strip()
            elif key == "type":
                value = _activity_type(value)
            elif key == "reward_type":
                value = _reward_type(value)
            elif key == "base_points" and value < 0:
                raise ValidationError("Base points cannot be negative")
            setattr(template, key, value)
        session.commit()
        session.refresh(template)
        session.expunge(template)
        return template


def delete_template(engine: Engine, workspace_id: str, template_id: str) -> None:
    """Delete a template; refused while challenges still use it."""
    with Session(engine) as session:
        template = _load_template(session, workspace_id, template_id)
        in_use = session.scalar(
            select(func.count()).select_from(Activity).where(Activity.template_id == template_id)
        )
        if in_use:
            raise ValidationError("Template is used by existing activities")
        session.delete(template)
        session.commit()


def list_templates(engine: Engine, workspace_id: str) -> list[ActivityTemplate]:
    with Session(engine) as session:
        rows = list(session.scalars(
            select(ActivityTemplate)
            .where(ActivityTemplate.workspace_id == workspace_id)
            .order_by(ActivityTemplate.name)
        ).all())
        session.expunge_all()
        return rows


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------
def _load_challenge(session: Session, workspace_id: str, challenge_id: str) -> Challenge:
    challenge = session.get(Challenge, challenge_id)
    if challenge is None or challenge.workspace_id != workspace_id:
        raise ResourceNotFoundError("Challenge", challenge_id)
    return challenge


def _load_activity(session: Session, workspace_id: str, activity_id: str) -> Activity:
    activity = session.get(Activity, activity_id)
    if activity is None or activity.challenge.workspace_id != workspace_id:
        raise ResourceNotFoundError("Activity", activity_id)
    return activity


def create_activity(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    *,
    template_id: str,
    points_value: int | None = None,
    max_submissions: int = 1,
    deadline: datetime | None = None,
    is_required: bool = False,
    actor_user_id: str | None = None,
) -> Activity:
    """Add a template to a challenge; points default to the template's."""
    if max_submissions < 1:
        raise ValidationError("max_submissions must be at least 1")
    with Session(engine, expire_on_commit=False) as session:
        _load_challenge(session, workspace_id, challenge_id)
        template = _load_template(session, workspace_id, template_id)
        activity = Activity(
            template_id=template.id,
            challenge_id=challenge_id,
            points_value=template.base_points if points_value is None else points_value,
            max_submissions=max_submissions,
            deadline=deadline,
            is_required=is_required,
        )
        session.add(activity)
        session.flush()
        log_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.ACTIVITY_CREATED,
            challenge_id=challenge_id,
            actor_user_id=actor_user_id,
            metadata={"activity_id": activity.id, "template": template.name},
        )
        session.commit()
        session.refresh(activity)
        session.expunge(activity)
        return activity


def update_activity(
    engine: Engine,
    workspace_id: str,
    activity_id: str,
    updates: dict[str, Any],
    *,
    actor_user_id: str | None = None,
) -> Activity:
    with Session(engine, expire_on_commit=False) as session:
        activity = _load_activity(session, workspace_id, activity_id)
        if "points_value" in updates:
            if updates["points_value"] < 0:
                raise ValidationError("Points cannot be negative")
            activity.points_value = updates["points_value"]
        if "max_submissions" in updates:
            if updates["max_submissions"] < 1:
                raise ValidationError("max_submissions must be at least 1")
            activity.max_submissions = updates["max_submissions"]
        if "deadline" in updates:
            activity.deadline = updates["deadline"]
        if "is_required" in updates:
            activity.is_required = bool(updates["is_required"])
        log_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.ACTIVITY_UPDATED,
            challenge_id=activity.challenge_id,
            actor_user_id=actor_user_id,
            metadata={"activity_id": activity.id, "fields": sorted(updates)},
        )
        session.commit()
        session.refresh(activity)
        session.expunge(activity)
        return activity


def delete_activity(engine: Engine, workspace_id: str, activity_id: str) -> None:
    with Session(engine) as session:
        activity = _load_activity(session, workspace_id, activity_id)
        session.delete(activity)
        session.commit()


def list_activities(engine: Engine, workspace_id: str, challenge_id: str) -> list[Activity]:
    """Activities of a challenge with ``.template`` loaded."""
    with Session(engine) as session:
        _load_challenge(session, workspace_id, challenge_id)
        rows = list(session.scalars(
            select(Activity)
            .where(Activity.challenge_id == challenge_id)
            .options(selectinload(Activity.template))
            .order_by(Activity.created_at)
        ).all())
        session.expunge_all()
        return rows


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------
def create_submission(
    engine: Engine,
    workspace_id: str,
    *,
    user_id: str,
    activity_id: str,
    enrollment_id: str,
    text_content: str | None = None,
    file_urls: list[str] | None = None,
    link_url: str | None = None,
    draft: bool = False,
) -> ActivitySubmission:
    """Record a participant's submission (PENDING, or DRAFT when *draft*).

    The enrollment must belong to *user_id*, be ENROLLED and be for the
    activity's challenge.  Non-draft submissions are capped at the
    activity's ``max_submissions``.
    """
    with Session(engine, expire_on_commit=False) as session:
        enrollment = session.get(Enrollment, enrollment_id)
        if (
            enrollment is None
            or enrollment.user_id != user_id
            or enrollment.challenge.workspace_id != workspace_id
        ):
            raise ResourceNotFoundError("Enrollment", enrollment_id)
        if enrollment.status != EnrollmentStatus.ENROLLED:
            raise ValidationError("Only enrolled participants can submit")

        activity = session.get(Activity, activity_id)
        if activity is None or activity.challenge_id != enrollment.challenge_id:
            raise ResourceNotFoundError("Activity", activity_id)
        if activity.deadline and _aware(activity.deadline) < datetime.now(UTC):
            raise ValidationError("The deadline for this activity has passed")

        if not draft:
            submitted = session.scalar(
                select(func.count()).select_from(ActivitySubmission).where(
                    ActivitySubmission.activity_id == activity_id,
                    ActivitySubmission.user_id == user_id,
                    ActivitySubmission.status.notin_(_NOT_COUNTED),
                )
            ) or 0
            if submitted >= (activity.max_submissions or 1):
                raise ValidationError("Maximum number of submissions reached for this activity")

        submission = ActivitySubmission(
            activity_id=activity_id,
            user_id=user_id,
            enrollment_id=enrollment_id,
            text_content=text_content,
            file_urls=list(file_urls or []),
            link_url=link_url,
            status=(SubmissionStatus.DRAFT if draft else SubmissionStatus.PENDING).value,
        )
        session.add(submission)
        session.flush()
        if not draft:
            log_event(
                session,
                workspace_id=workspace_id,
                type=ActivityEventType.SUBMISSION_CREATED,
                challenge_id=enrollment.challenge_id,
                enrollment_id=enrollment.id,
                user_id=user_id,
                actor_user_id=user_id,
                metadata={"submission_id": submission.id, "activity_id": activity_id},
            )
        session.commit()
        session.refresh(submission)
        session.expunge(submission)
        return submission


def submission_query(workspace_id: str):
    return (
        select(ActivitySubmission)
        .join(Activity, Activity.id == ActivitySubmission.activity_id)
        .join(Challenge, Challenge.id == Activity.challenge_id)
        .where(Challenge.workspace_id == workspace_id)
        .options(
            selectinload(ActivitySubmission.activity).selectinload(Activity.template),
            selectinload(ActivitySubmission.activity).selectinload(Activity.challenge),
            selectinload(ActivitySubmission.user),
        )
    )


def list_user_submissions(
    engine: Engine, workspace_id: str, user_id: str, *, challenge_id: str | None = None
) -> list[ActivitySubmission]:
    with Session(engine) as session:
        query = submission_query(workspace_id).where(ActivitySubmission.user_id == user_id)
        if challenge_id:
            query = query.where(Activity.challenge_id == challenge_id)
        rows = list(session.scalars(query.order_by(ActivitySubmission.submitted_at.desc())).all())
        session.expunge_all()
        return rows


def list_pending_submissions(
    engine: Engine, workspace_id: str, *, challenge_id: str | None = None
) -> list[ActivitySubmission]:
    """Submissions awaiting final review, oldest first.

    Includes MANAGER_APPROVED ones, which only an admin can settle.
    """
    with Session(engine) as session:
        query = submission_query(workspace_id).where(
            ActivitySubmission.status.in_(AWAITING_REVIEW)
        )
        if challenge_id:
            query = query.where(Activity.challenge_id == challenge_id)
        rows = list(session.scalars(query.order_by(ActivitySubmission.submitted_at)).all())
        session.expunge_all()
        return rows


def _issuable(reward: ResolvedReward) -> bool:
    if reward.type == RewardType.SKU:
        return bool(reward.sku_id)
    return bool(reward.amount and reward.amount > 0)


def review_submission(
    engine: Engine,
    workspace_id: str,
    submission_id: str,
    *,
    action: str,
    reviewer_id: str,
    review_notes: str | None = None,
    points_awarded: int | None = None,
    challenge_id: str | None = None,
) -> tuple[ActivitySubmission, str | None]:
    """Approve or reject a submission awaiting review.

    On challenges with ``require_manager_approval`` only MANAGER_APPROVED
    submissions can be approved; rejecting a PENDING one is still allowed.

    Returns ``(submission, issuance_id)`` where *issuance_id* is set only
    when a reward was queued for RewardSTACK.

    Raises
    ------
    ValidationError
        Unknown action, or the submission was already reviewed.
    """
    if action not in REVIEW_ACTIONS:
        raise ValidationError("Invalid action. Must be 'approve' or 'reject'")
    if points_awarded is not None and points_awarded < 0:
        raise ValidationError("Points awarded cannot be negative")

    with Session(engine, expire_on_commit=False) as session:
        submission = session.get(ActivitySubmission, submission_id)
        if submission is None:
            raise ResourceNotFoundError("Submission", submission_id)
        activity = submission.activity
        challenge = activity.challenge
        if challenge.workspace_id != workspace_id or (
            challenge_id and challenge.id != challenge_id
        ):
            raise ResourceNotFoundError("Submission", submission_id)
        if submission.status not in AWAITING_REVIEW:
            raise ValidationError("Submission has already been reviewed")
        if (
            action == "approve"
            and challenge.require_manager_approval
            and submission.status != SubmissionStatus.MANAGER_APPROVED
        ):
            raise ValidationError("Submission needs manager approval before it can be approved")

        now = datetime.now(UTC)
        submission.reviewed_by = reviewer_id
        submission.reviewed_at = now
        submission.review_notes = review_notes
        queued_id = None

        if action == "reject":
            submission.status = SubmissionStatus.REJECTED.value
            event_type = ActivityEventType.SUBMISSION_REJECTED
        else:
            submission.status = SubmissionStatus.APPROVED.value
            event_type = ActivityEventType.SUBMISSION_APPROVED
            template = activity.template
            reward = resolve_submission_reward(
                template.reward_type, template.reward_config, activity.points_value or 0
            )
            if points_awarded is not None:
                submission.points_awarded = points_awarded
            elif reward.type == RewardType.POINTS:
                submission.points_awarded = reward.amount
            else:
                submission.points_awarded = activity.points_value
            if reward.type == RewardType.POINTS and points_awarded is not None:
                reward = ResolvedReward(type=reward.type, amount=points_awarded)

            if _issuable(reward):
                workspace = session.get(Workspace, workspace_id)
                issuance = add_issuance(
                    session,
                    workspace_id=workspace_id,
                    user_id=submission.user_id,
                    reward_type=reward.type,
                    amount=reward.amount,
                    currency=reward.currency,
                    sku_id=reward.sku_id,
                    provider=reward.provider,
                    challenge_id=challenge.id,
                    submission_id=submission.id,
                    description=f"Reward for completing activity: {template.name}",
                    issued_by=reviewer_id,
                    metadata={"submissionId": submission.id, "activityId": activity.id},
                )
                if workspace.reward_stack_enabled:
                    queued_id = issuance.id
                elif reward.type == RewardType.POINTS:
                    issuance.status = RewardStatus.ISSUED.value
                    issuance.reward_stack_status = None
                    issuance.issued_at = now
            else:
                logger.info("No reward configured for submission %s", submission.id)

        log_event(
            session,
            workspace_id=workspace_id,
            type=event_type,
            challenge_id=challenge.id,
            enrollment_id=submission.enrollment_id,
            user_id=submission.user_id,
            actor_user_id=reviewer_id,
            metadata={
                "submission_id": submission.id,
                "activity_id": activity.id,
                "points_awarded": submission.points_awarded,
            },
        )
        session.commit()
        session.refresh(submission)
        session.expunge(submission)

    logger.info("Submission %s reviewed (%s) by %s", submission_id, action, reviewer_id)
    return submission, queued_id
