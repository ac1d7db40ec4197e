"""
changemaker.database.seed — Demo Workspace Seeder
==================================================

A small demo tenant so a fresh install has something to click through: one
workspace, an admin and two participants, a handful of activity templates
and a published challenge with activities attached.

Idempotent — keyed on the workspace slug and user e-mails; existing rows
are left untouched.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.models import (
    Activity,
    ActivityTemplate,
    ActivityType,
    Challenge,
    ChallengeStatus,
    Enrollment,
    EnrollmentStatus,
    RewardType,
    Role,
    User,
    Workspace,
    WorkspaceMembership,
    WorkspacePointsBudget,
)

logger = logging.getLogger(__name__)

DEMO_SLUG = "demo"

DEMO_USERS: tuple[tuple[str, str, str, str], ...] = (
    ("admin@demo.changemaker.local", "Avery", "Admin", Role.ADMIN.value),
    ("jordan@demo.changemaker.local", "Jordan", "Lee", Role.PARTICIPANT.value),
    ("sam@demo.changemaker.local", "Sam", "Rivera", Role.PARTICIPANT.value),
)
"""Each entry is ``(email, first_name, last_name, role)``."""

DEMO_TEMPLATES: tuple[tuple[str, str, str, int], ...] = (
    ("Share an idea", ActivityType.TEXT_SUBMISSION.value, "Describe one improvement idea.", 25),
    ("Upload a photo", ActivityType.FILE_UPLOAD.value, "Show your team in action.", 15),
    ("Post a link", ActivityType.LINK_SUBMISSION.value, "Link to a prototype or doc.", 20),
)
"""Each entry is ``(name, type, description, base_points)``."""


def _get_or_create_user(session: Session, email: str, first: str, last: str) -> User:
    user = session.scalar(select(User).where(User.email == email))
    if user is None:
        user = User(
            email=email,
            first_name=first,
            last_name=last,
            display_name=f"{first} {last}",
            preferences={},
        )
        session.add(user)
        session.flush()
    return user


def seed_demo_workspace(engine: Engine) -> bool:
    """Create the demo workspace if it does not exist yet.

    Returns True when anything was written.
    """
    with Session(engine) as session:
        if session.scalar(select(Workspace.id).where(Workspace.slug == DEMO_SLUG)):
            return False

        ws = Workspace(slug=DEMO_SLUG, name="Demo Workspace", description="Sample data")
        session.add(ws)
        session.flush()

        users = []
        for index, (email, first, last, role) in enumerate(DEMO_USERS):
            user = _get_or_create_user(session, email, first, last)
            session.add(WorkspaceMembership(
                user_id=user.id, workspace_id=ws.id, role=role, is_primary=index == 0,
            ))
            users.append(user)

        templates = []
        for name, kind, description, points in DEMO_TEMPLATES:
            template = ActivityTemplate(
                workspace_id=ws.id,
                name=name,
                type=kind,
                description=description,
                base_points=points,
                reward_type=RewardType.POINTS.value,
            )
            session.add(template)
            templates.append(template)
        session.flush()

        now = datetime.now(UTC)
        challenge = Challenge(
            workspace_id=ws.id,
            title="Innovation Sprint",
            description="Two weeks to pitch, prototype and share improvements.",
            start_date=now,
            end_date=now + timedelta(days=14),
            enrollment_deadline=now + timedelta(days=7),
            status=ChallengeStatus.PUBLISHED.value,
            reward_type=RewardType.POINTS.value,
            reward_config={"amount": 100},
        )
        session.add(challenge)
        session.flush()

        for template in templates:
            session.add(Activity(
                template_id=template.id,
                challenge_id=challenge.id,
                points_value=template.base_points,
                max_submissions=1,
            ))
        for user in users[1:]:
            session.add(Enrollment(
                user_id=user.id,
                challenge_id=challenge.id,
                status=EnrollmentStatus.ENROLLED.value,
            ))
        session.add(WorkspacePointsBudget(workspace_id=ws.id, total_budget=10_000, allocated=0))
        session.commit()

    logger.info("Seeded demo workspace '%s'.", DEMO_SLUG)
    return True
