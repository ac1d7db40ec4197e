"""
changemaker.api.serializers — ORM rows → JSON dicts
====================================================

Shared by the route modules.  Nested relationships are only included when
the service already loaded them (callers pass ``include_*`` flags).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from changemaker.database.models import (
    Activity,
    ActivitySubmission,
    ActivityTemplate,
    Challenge,
    ChallengeAssignment,
    Enrollment,
    InviteCode,
    RewardIssuance,
    User,
    Workspace,
    WorkspaceMembership,
)
from changemaker.engine.rewards import reward_label


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def user_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "display_name": user.display_name,
        "is_pending": user.is_pending,
        "is_superadmin": user.is_superadmin,
    }


def workspace_dict(ws: Workspace) -> dict[str, Any]:
    return {
        "id": ws.id,
        "slug": ws.slug,
        "name": ws.name,
        "description": ws.description,
        "active": ws.active,
        "reward_stack": {
            "enabled": ws.reward_stack_enabled,
            "environment": ws.reward_stack_environment,
            "program_id": ws.reward_stack_program_id,
            "org_id": ws.reward_stack_org_id,
            "webhook_signed": bool(ws.reward_stack_webhook_secret),
        },
        "created_at": iso(ws.created_at),
    }


def member_dict(membership: WorkspaceMembership) -> dict[str, Any]:
    return {
        **user_dict(membership.user),
        "role": membership.role,
        "is_primary": membership.is_primary,
        "joined_at": iso(membership.joined_at),
        "reward_stack_sync_status": membership.user.reward_stack_sync_status,
    }


def challenge_dict(challenge: Challenge) -> dict[str, Any]:
    return {
        "id": challenge.id,
        "workspace_id": challenge.workspace_id,
        "title": challenge.title,
        "description": challenge.description,
        "start_date": iso(challenge.start_date),
        "end_date": iso(challenge.end_date),
        "enrollment_deadline": iso(challenge.enrollment_deadline),
        "status": challenge.status,
        "reward_type": challenge.reward_type,
        "reward_label": reward_label(challenge.reward_type) if challenge.reward_type else None,
        "reward_config": challenge.reward_config,
        "require_manager_approval": challenge.require_manager_approval,
        "created_at": iso(challenge.created_at),
    }


def enrollment_dict(
    enrollment: Enrollment, *, include_challenge: bool = False, include_user: bool = False
) -> dict[str, Any]:
    data = {
        "id": enrollment.id,
        "user_id": enrollment.user_id,
        "challenge_id": enrollment.challenge_id,
        "status": enrollment.status,
        "completed_at": iso(enrollment.completed_at),
        "created_at": iso(enrollment.created_at),
    }
    if include_challenge:
        data["challenge"] = {
            "id": enrollment.challenge.id,
            "title": enrollment.challenge.title,
            "status": enrollment.challenge.status,
        }
    if include_user:
        data["user"] = user_dict(enrollment.user)
    return data


def template_dict(template: ActivityTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "type": template.type,
        "base_points": template.base_points,
        "requires_approval": template.requires_approval,
        "allow_multiple": template.allow_multiple,
        "reward_type": template.reward_type,
        "reward_config": template.reward_config,
    }


def activity_dict(activity: Activity, *, include_template: bool = True) -> dict[str, Any]:
    data = {
        "id": activity.id,
        "challenge_id": activity.challenge_id,
        "template_id": activity.template_id,
        "points_value": activity.points_value,
        "max_submissions": activity.max_submissions,
        "deadline": iso(activity.deadline),
        "is_required": activity.is_required,
    }
    if include_template:
        data["template"] = template_dict(activity.template)
    return data


def submission_dict(submission: ActivitySubmission) -> dict[str, Any]:
    return {
        "id": submission.id,
        "activity_id": submission.activity_id,
        "user_id": submission.user_id,
        "enrollment_id": submission.enrollment_id,
        "text_content": submission.text_content,
        "file_urls": submission.file_urls or [],
        "link_url": submission.link_url,
        "status": submission.status,
        "points_awarded": submission.points_awarded,
        "review_notes": submission.review_notes,
        "reviewed_by": submission.reviewed_by,
        "reviewed_at": iso(submission.reviewed_at),
        "manager_notes": submission.manager_notes,
        "manager_reviewed_by": submission.manager_reviewed_by,
        "manager_reviewed_at": iso(submission.manager_reviewed_at),
        "reward_issuance_id": submission.reward_issuance_id,
        "reward_issued": submission.reward_issued,
        "submitted_at": iso(submission.submitted_at),
    }


def submission_detail_dict(submission: ActivitySubmission) -> dict[str, Any]:
    """:func:`submission_dict` plus activity, challenge and submitter (must be loaded)."""
    data = submission_dict(submission)
    data["activity"] = {
        "id": submission.activity.id,
        "name": submission.activity.template.name,
        "challenge_id": submission.activity.challenge_id,
        "challenge_title": submission.activity.challenge.title,
    }
    data["user"] = {"id": submission.user.id, "email": submission.user.email}
    return data


def assignment_dict(
    assignment: ChallengeAssignment, *, include_manager: bool = False
) -> dict[str, Any]:
    data = {
        "id": assignment.id,
        "challenge_id": assignment.challenge_id,
        "manager_id": assignment.manager_id,
        "workspace_id": assignment.workspace_id,
        "assigned_by": assignment.assigned_by,
        "assigned_at": iso(assignment.assigned_at),
    }
    if include_manager:
        data["manager"] = user_dict(assignment.manager)
    return data


def invite_dict(invite: InviteCode, state: str | None = None) -> dict[str, Any]:
    return {
        "id": invite.id,
        "code": invite.code,
        "workspace_id": invite.workspace_id,
        "challenge_id": invite.challenge_id,
        "role": invite.role,
        "expires_at": iso(invite.expires_at),
        "max_uses": invite.max_uses,
        "used_count": invite.used_count,
        "target_email": invite.target_email,
        "state": state,
        "created_at": iso(invite.created_at),
    }


def reward_dict(issuance: RewardIssuance) -> dict[str, Any]:
    return {
        "id": issuance.id,
        "user_id": issuance.user_id,
        "challenge_id": issuance.challenge_id,
        "type": issuance.type,
        "amount": issuance.amount,
        "currency": issuance.currency,
        "sku_id": issuance.sku_id,
        "provider": issuance.provider,
        "description": issuance.description,
        "status": issuance.status,
        "reward_stack_status": issuance.reward_stack_status,
        "reward_stack_transaction_id": issuance.reward_stack_transaction_id,
        "reward_stack_adjustment_id": issuance.reward_stack_adjustment_id,
        "error": issuance.error,
        "metadata": issuance.metadata_ or {},
        "issued_at": iso(issuance.issued_at),
        "created_at": iso(issuance.created_at),
    }
