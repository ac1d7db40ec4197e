"""
changemaker.services.workspace_service — Tenants & Membership
==============================================================

A workspace is the tenant boundary: every challenge, template, invite and
points balance belongs to exactly one.  Access checks here back the API's
``require_workspace_access`` / ``require_workspace_admin`` dependencies.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session, selectinload

from changemaker.database.models import (
    Activity,
    ActivitySubmission,
    Challenge,
    Enrollment,
    RewardStackEnvironment,
    Role,
    SubmissionStatus,
    User,
    Workspace,
    WorkspaceMembership,
)
from changemaker.errors import ConflictError, ResourceNotFoundError, ValidationError

logger = logging.getLogger(__name__)

SLUG_RE = re.compile(r"^[a-z0-9-]{2,50}$")


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------
def get_workspace_by_slug(engine: Engine, slug: str) -> Workspace | None:
    with Session(engine) as session:
        ws = session.scalar(select(Workspace).where(Workspace.slug == slug))
        if ws is not None:
            session.expunge(ws)
        return ws


def get_workspace(engine: Engine, workspace_id: str) -> Workspace:
    with Session(engine) as session:
        ws = session.get(Workspace, workspace_id)
        if ws is None:
            raise ResourceNotFoundError("Workspace", workspace_id)
        session.expunge(ws)
        return ws


def list_all_workspaces(engine: Engine) -> list[dict]:
    """Every workspace with member / challenge counts (platform admin view)."""
    with Session(engine) as session:
        member_counts = dict(session.execute(
            select(WorkspaceMembership.workspace_id, func.count())
            .group_by(WorkspaceMembership.workspace_id)
        ).all())
        challenge_counts = dict(session.execute(
            select(Challenge.workspace_id, func.count()).group_by(Challenge.workspace_id)
        ).all())
        workspaces = session.scalars(select(Workspace).order_by(Workspace.name)).all()
        return [
            {
                "id": ws.id,
                "slug": ws.slug,
                "name": ws.name,
                "active": ws.active,
                "member_count": member_counts.get(ws.id, 0),
                "challenge_count": challenge_counts.get(ws.id, 0),
                "reward_stack_enabled": ws.reward_stack_enabled,
            }
            for ws in workspaces
        ]


# ---------------------------------------------------------------------------
# Create / update
# ---------------------------------------------------------------------------
def create_workspace(
    engine: Engine,
    *,
    slug: str,
    name: str,
    creator_id: str,
    description: str | None = None,
) -> Workspace:
    """Create a workspace and make *creator_id* its first ADMIN."""
    slug = (slug or "").strip().lower()
    name = (name or "").strip()
    if not name:
        raise ValidationError("Workspace name is required")
    if not SLUG_RE.match(slug):
        raise ValidationError(
            "Slug must be 2-50 characters of lowercase letters, numbers and hyphens"
        )

    with Session(engine, expire_on_commit=False) as session:
        if session.scalar(select(Workspace.id).where(Workspace.slug == slug)):
            raise ConflictError(f"Workspace slug already taken: {slug}")

        has_primary = session.scalar(
            select(WorkspaceMembership.id).where(
                WorkspaceMembership.user_id == creator_id,
                WorkspaceMembership.is_primary.is_(True),
            )
        )
        ws = Workspace(slug=slug, name=name, description=description)
        session.add(ws)
        session.flush()
        session.add(WorkspaceMembership(
            user_id=creator_id,
            workspace_id=ws.id,
            role=Role.ADMIN.value,
            is_primary=has_primary is None,
        ))
        session.commit()
        session.refresh(ws)
        session.expunge(ws)

    logger.info("Workspace %s created by %s", slug, creator_id)
    return ws


def update_workspace(
    engine: Engine,
    workspace_id: str,
    *,
    name: str | None = None,
    description: str | None = None,
    active: bool | None = None,
) -> Workspace:
    with Session(engine, expire_on_commit=False) as session:
        ws = session.get(Workspace, workspace_id)
        if ws is None:
            raise ResourceNotFoundError("Workspace", workspace_id)
        if name is not None:
            if not name.strip():
                raise ValidationError("Workspace name cannot be empty")
            ws.name = name.strip()
        if description is not None:
            ws.description = description
        if active is not None:
            ws.active = active
        session.commit()
        session.refresh(ws)
        session.expunge(ws)
        return ws


def update_rewardstack_config(
    engine: Engine,
    workspace_id: str,
    *,
    enabled: bool | None = None,
    environment: str | None = None,
    program_id: str | None = None,
    org_id: str | None = None,
    webhook_secret: str | None = None,
) -> Workspace:
    """Change the workspace's RewardSTACK settings.

    Enabling requires a program id (given now or already stored).  An empty
    *webhook_secret* turns webhook signature checks off.
    """
    if environment is not None:
        environment = environment.strip().upper()
        if environment not in {e.value for e in RewardStackEnvironment}:
            raise ValidationError(f"Invalid RewardSTACK environment: {environment}")

    with Session(engine, expire_on_commit=False) as session:
        ws = session.get(Workspace, workspace_id)
        if ws is None:
            raise ResourceNotFoundError("Workspace", workspace_id)
        if environment is not None:
            ws.reward_stack_environment = environment
        if program_id is not None:
            ws.reward_stack_program_id = program_id.strip() or None
        if org_id is not None:
            ws.reward_stack_org_id = org_id.strip() or None
        if webhook_secret is not None:
            ws.reward_stack_webhook_secret = webhook_secret.strip() or None
        if enabled is not None:
            if enabled and not ws.reward_stack_program_id:
                raise ValidationError("A RewardSTACK program ID is required to enable rewards")
            ws.reward_stack_enabled = enabled
        session.commit()
        session.refresh(ws)
        session.expunge(ws)

    logger.info(
        "RewardSTACK config for %s: enabled=%s env=%s",
        ws.slug, ws.reward_stack_enabled, ws.reward_stack_environment,
    )
    return ws


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------
def get_membership(engine: Engine, user_id: str, workspace_id: str) -> WorkspaceMembership | None:
    with Session(engine) as session:
        membership = session.scalar(
            select(WorkspaceMembership).where(
                WorkspaceMembership.user_id == user_id,
                WorkspaceMembership.workspace_id == workspace_id,
            )
        )
        if membership is not None:
            session.expunge(membership)
        return membership


def get_member_role(engine: Engine, user_id: str, workspace_id: str) -> str | None:
    membership = get_membership(engine, user_id, workspace_id)
    return membership.role if membership else None


def verify_workspace_access(engine: Engine, user_id: str, workspace_id: str) -> bool:
    return get_membership(engine, user_id, workspace_id) is not None


def verify_workspace_admin(engine: Engine, user_id: str, workspace_id: str) -> bool:
    return get_member_role(engine, user_id, workspace_id) == Role.ADMIN


def list_workspace_members(engine: Engine, workspace_id: str) -> list[WorkspaceMembership]:
    """Memberships with ``.user`` loaded, ordered by e-mail."""
    with Session(engine) as session:
        rows = list(session.scalars(
            select(WorkspaceMembership)
            .join(User, User.id == WorkspaceMembership.user_id)
            .where(WorkspaceMembership.workspace_id == workspace_id)
            .options(selectinload(WorkspaceMembership.user))
            .order_by(User.email)
        ).all())
        for row in rows:
            session.expunge(row.user)
            session.expunge(row)
        return rows


def list_user_workspaces(engine: Engine, user_id: str) -> list[tuple[Workspace, str]]:
    """``(workspace, role)`` pairs for every workspace the user belongs to."""
    with Session(engine) as session:
        rows = session.execute(
            select(Workspace, WorkspaceMembership.role)
            .join(WorkspaceMembership, WorkspaceMembership.workspace_id == Workspace.id)
            .where(WorkspaceMembership.user_id == user_id)
            .order_by(WorkspaceMembership.is_primary.desc(), Workspace.name)
        ).all()
        result = []
        for ws, role in rows:
            session.expunge(ws)
            result.append((ws, role))
        return result


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------
def get_workspace_stats(engine: Engine, workspace_id: str) -> dict[str, int]:
    with Session(engine) as session:
        members = session.scalar(
            select(func.count()).select_from(WorkspaceMembership)
            .where(WorkspaceMembership.workspace_id == workspace_id)
        ) or 0
        challenges = session.scalar(
            select(func.count()).select_from(Challenge)
            .where(Challenge.workspace_id == workspace_id)
        ) or 0
        enrollments = session.scalar(
            select(func.count()).select_from(Enrollment)
            .join(Challenge, Challenge.id == Enrollment.challenge_id)
            .where(Challenge.workspace_id == workspace_id)
        ) or 0
        pending = session.scalar(
            select(func.count()).select_from(ActivitySubmission)
            .join(Activity, Activity.id == ActivitySubmission.activity_id)
            .join(Challenge, Challenge.id == Activity.challenge_id)
            .where(
                Challenge.workspace_id == workspace_id,
                ActivitySubmission.status == SubmissionStatus.PENDING.value,
            )
        ) or 0
    return {
        "total_members": members,
        "total_challenges": challenges,
        "total_enrollments": enrollments,
        "pending_submissions": pending,
    }
