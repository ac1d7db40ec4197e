"""
changemaker.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables:
- workspaces             — Tenants (one per customer organisation)
- users                  — People, linked to Supabase Auth by ``supabase_user_id``
- workspace_memberships  — Role-scoped membership (ADMIN / MANAGER / PARTICIPANT)
- challenges             — Time-boxed engagement campaigns
- challenge_assignments  — Managers assigned to review a challenge
- enrollments            — A user's participation in a challenge
- activity_templates     — Reusable task definitions per workspace
- activities             — A template configured for one challenge
- activity_submissions   — Participant work awaiting / after review
- points_balances        — Running per-workspace points totals
- points_ledger          — Append-only record of every points award
- workspace_points_budgets / challenge_points_budgets — Budgeted vs allocated points
- invite_codes / invite_redemptions — Join links and who used them
- reward_issuances       — Rewards owed / issued through RewardSTACK
- activity_events        — Append-only audit trail
- rate_limit_events      — Sliding-window limiter state
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Changemaker ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Role(enum.StrEnum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    PARTICIPANT = "PARTICIPANT"


class EnrollmentStatus(enum.StrEnum):
    INVITED = "INVITED"
    ENROLLED = "ENROLLED"
    WITHDRAWN = "WITHDRAWN"
    COMPLETED = "COMPLETED"


class ChallengeStatus(enum.StrEnum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class ActivityType(enum.StrEnum):
    TEXT_SUBMISSION = "TEXT_SUBMISSION"
    FILE_UPLOAD = "FILE_UPLOAD"
    PHOTO_UPLOAD = "PHOTO_UPLOAD"
    LINK_SUBMISSION = "LINK_SUBMISSION"
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    VIDEO_SUBMISSION = "VIDEO_SUBMISSION"


class SubmissionStatus(enum.StrEnum):
    PENDING = "PENDING"
    MANAGER_APPROVED = "MANAGER_APPROVED"
    NEEDS_REVISION = "NEEDS_REVISION"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DRAFT = "DRAFT"


class RewardType(enum.StrEnum):
    POINTS = "points"
    SKU = "sku"
    MONETARY = "monetary"


class RewardStatus(enum.StrEnum):
    PENDING = "PENDING"
    ISSUED = "ISSUED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class RewardStackStatus(enum.StrEnum):
    """Delivery state of a reward on the RewardSTACK side."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RewardStackSyncStatus(enum.StrEnum):
    NOT_SYNCED = "NOT_SYNCED"
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class RewardStackEnvironment(enum.StrEnum):
    QA = "QA"
    PRODUCTION = "PRODUCTION"


class ActivityEventType(enum.StrEnum):
    """Categories of rows recorded in activity_events."""
    INVITE_SENT = "INVITE_SENT"
    INVITE_REDEEMED = "INVITE_REDEEMED"
    ENROLLED = "ENROLLED"
    UNENROLLED = "UNENROLLED"
    ENROLLMENT_COMPLETED = "ENROLLMENT_COMPLETED"
    RBAC_ROLE_CHANGED = "RBAC_ROLE_CHANGED"
    SUBMISSION_CREATED = "SUBMISSION_CREATED"
    SUBMISSION_APPROVED = "SUBMISSION_APPROVED"
    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    SUBMISSION_MANAGER_APPROVED = "SUBMISSION_MANAGER_APPROVED"
    SUBMISSION_NEEDS_REVISION = "SUBMISSION_NEEDS_REVISION"
    MANAGER_ASSIGNED = "MANAGER_ASSIGNED"
    MANAGER_UNASSIGNED = "MANAGER_UNASSIGNED"
    CHALLENGE_CREATED = "CHALLENGE_CREATED"
    CHALLENGE_UPDATED = "CHALLENGE_UPDATED"
    CHALLENGE_PUBLISHED = "CHALLENGE_PUBLISHED"
    CHALLENGE_UNPUBLISHED = "CHALLENGE_UNPUBLISHED"
    CHALLENGE_ARCHIVED = "CHALLENGE_ARCHIVED"
    ACTIVITY_CREATED = "ACTIVITY_CREATED"
    ACTIVITY_UPDATED = "ACTIVITY_UPDATED"
    REWARD_ISSUED = "REWARD_ISSUED"


# ---------------------------------------------------------------------------
# Workspace — tenant
# ---------------------------------------------------------------------------
class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    slug: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    # RewardSTACK configuration (credentials are platform-wide, in env vars)
    reward_stack_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    reward_stack_environment: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RewardStackEnvironment.QA.value
    )
    reward_stack_program_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_org_id: Mapped[str | None] = mapped_column(String(100), default=None)
    # HMAC-SHA256 key for inbound webhooks; unsigned events are accepted while unset
    reward_stack_webhook_secret: Mapped[str | None] = mapped_column(String(200), default=None)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    memberships: Mapped[list[WorkspaceMembership]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )
    challenges: Mapped[list[Challenge]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Workspace id={self.id} slug={self.slug!r}>"


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    supabase_user_id: Mapped[str | None] = mapped_column(String(64), unique=True, default=None)
    first_name: Mapped[str | None] = mapped_column(String(100), default=None)
    last_name: Mapped[str | None] = mapped_column(String(100), default=None)
    display_name: Mapped[str | None] = mapped_column(String(100), default=None)

    # Shipping details (synced to RewardSTACK participants)
    phone: Mapped[str | None] = mapped_column(String(40), default=None)
    address_line1: Mapped[str | None] = mapped_column(String(200), default=None)
    address_line2: Mapped[str | None] = mapped_column(String(200), default=None)
    city: Mapped[str | None] = mapped_column(String(100), default=None)
    state: Mapped[str | None] = mapped_column(String(100), default=None)
    zip_code: Mapped[str | None] = mapped_column(String(20), default=None)
    country: Mapped[str | None] = mapped_column(String(100), default=None)

    # Preferences mirrored from the identity provider's user_metadata
    preferences: Mapped[dict | None] = mapped_column(JSONB, default=dict)

    is_pending: Mapped[bool] = mapped_column(Boolean, default=False)
    is_superadmin: Mapped[bool] = mapped_column(Boolean, default=False)

    reward_stack_participant_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RewardStackSyncStatus.NOT_SYNCED.value
    )
    reward_stack_last_sync: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    memberships: Mapped[list[WorkspaceMembership]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    enrollments: Mapped[list[Enrollment]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str | None:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"


# ---------------------------------------------------------------------------
# WorkspaceMembership — role-scoped tenancy
# ---------------------------------------------------------------------------
class WorkspaceMembership(Base):
    __tablename__ = "workspace_memberships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=Role.PARTICIPANT.value)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    preferences: Mapped[dict | None] = mapped_column(JSONB, default=None)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped[User] = relationship(back_populates="memberships")
    workspace: Mapped[Workspace] = relationship(back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_memberships_user_workspace"),
        Index("ix_memberships_workspace", "workspace_id"),
    )

    def __repr__(self) -> str:
        return f"<WorkspaceMembership user={self.user_id} ws={self.workspace_id} role={self.role}>"


# ---------------------------------------------------------------------------
# Challenge
# ---------------------------------------------------------------------------
class Challenge(Base):
    __tablename__ = "challenges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    enrollment_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ChallengeStatus.DRAFT.value
    )

    # Completion reward, e.g. {"amount": 500, "description": "..."} or {"skuId": "..."}
    reward_type: Mapped[str | None] = mapped_column(String(20), default=None)
    reward_config: Mapped[dict | None] = mapped_column(JSONB, default=None)
    require_manager_approval: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    workspace: Mapped[Workspace] = relationship(back_populates="challenges")
    enrollments: Mapped[list[Enrollment]] = relationship(
        back_populates="challenge", cascade="all, delete-orphan"
    )
    activities: Mapped[list[Activity]] = relationship(
        back_populates="challenge", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_challenges_date_order"),
        Index("ix_challenges_workspace", "workspace_id"),
    )

    def __repr__(self) -> str:
        return f"<Challenge id={self.id} title={self.title!r} status={self.status}>"


# ---------------------------------------------------------------------------
# ChallengeAssignment — a manager reviewing one challenge's submissions
# ---------------------------------------------------------------------------
class ChallengeAssignment(Base):
    __tablename__ = "challenge_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    challenge_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    manager_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    assigned_by: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    manager: Mapped[User] = relationship(foreign_keys=[manager_id])
    challenge: Mapped[Challenge] = relationship()

    __table_args__ = (
        UniqueConstraint("challenge_id", "manager_id", name="uq_challenge_assignments_challenge_manager"),
        Index("ix_challenge_assignments_manager_workspace", "manager_id", "workspace_id"),
    )

    def __repr__(self) -> str:
        return f"<ChallengeAssignment challenge={self.challenge_id} manager={self.manager_id}>"


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------
class Enrollment(Base):
    __tablename__ = "enrollments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EnrollmentStatus.INVITED.value
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship(back_populates="enrollments")
    challenge: Mapped[Challenge] = relationship(back_populates="enrollments")
    submissions: Mapped[list[ActivitySubmission]] = relationship(
        back_populates="enrollment", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", name="uq_enrollments_user_challenge"),
        Index("ix_enrollments_challenge_status", "challenge_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Enrollment id={self.id} user={self.user_id} status={self.status}>"


# ---------------------------------------------------------------------------
# ActivityTemplate — reusable task definition
# ---------------------------------------------------------------------------
class ActivityTemplate(Base):
    __tablename__ = "activity_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    type: Mapped[str] = mapped_column(
        String(30), nullable=False, default=ActivityType.TEXT_SUBMISSION.value
    )
    base_points: Mapped[int] = mapped_column(Integer, default=0)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=True)
    allow_multiple: Mapped[bool] = mapped_column(Boolean, default=False)
    reward_type: Mapped[str | None] = mapped_column(String(20), default=None)
    reward_config: Mapped[dict | None] = mapped_column(JSONB, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_activity_templates_workspace", "workspace_id"),
    )

    def __repr__(self) -> str:
        return f"<ActivityTemplate id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# Activity — a template placed in a challenge
# ---------------------------------------------------------------------------
class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    template_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("activity_templates.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    points_value: Mapped[int] = mapped_column(Integer, default=0)
    max_submissions: Mapped[int] = mapped_column(Integer, default=1)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    template: Mapped[ActivityTemplate] = relationship()
    challenge: Mapped[Challenge] = relationship(back_populates="activities")
    submissions: Mapped[list[ActivitySubmission]] = relationship(
        back_populates="activity", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_activities_challenge", "challenge_id"),
    )

    def __repr__(self) -> str:
        return f"<Activity id={self.id} challenge={self.challenge_id} points={self.points_value}>"


# ---------------------------------------------------------------------------
# ActivitySubmission
# ---------------------------------------------------------------------------
class ActivitySubmission(Base):
    __tablename__ = "activity_submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    activity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("activities.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    enrollment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False
    )
    text_content: Mapped[str | None] = mapped_column(Text, default=None)
    file_urls: Mapped[list | None] = mapped_column(JSONB, default=list)
    link_url: Mapped[str | None] = mapped_column(String(1000), default=None)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubmissionStatus.PENDING.value
    )
    points_awarded: Mapped[int | None] = mapped_column(Integer, default=None)
    review_notes: Mapped[str | None] = mapped_column(Text, default=None)
    reviewed_by: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    manager_notes: Mapped[str | None] = mapped_column(Text, default=None)
    manager_reviewed_by: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    manager_reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    reward_issuance_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("reward_issuances.id", ondelete="SET NULL"), default=None
    )
    reward_issued: Mapped[bool] = mapped_column(Boolean, default=False)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    activity: Mapped[Activity] = relationship(back_populates="submissions")
    user: Mapped[User] = relationship(foreign_keys=[user_id])
    enrollment: Mapped[Enrollment] = relationship(back_populates="submissions")

    __table_args__ = (
        Index("ix_submissions_activity_status", "activity_id", "status"),
        Index("ix_submissions_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<ActivitySubmission id={self.id} status={self.status}>"


# ---------------------------------------------------------------------------
# Points — balances, ledger, budgets
# ---------------------------------------------------------------------------
class PointsBalance(Base):
    __tablename__ = "points_balances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    total_points: Mapped[int] = mapped_column(Integer, default=0)
    available_points: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_points_balances_user_workspace"),
        Index("ix_points_balances_workspace_total", "workspace_id", "total_points"),
    )

    def __repr__(self) -> str:
        return f"<PointsBalance user={self.user_id} total={self.total_points}>"


class PointsLedger(Base):
    __tablename__ = "points_ledger"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="SET NULL"), default=None
    )
    to_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    submission_id: Mapped[str | None] = mapped_column(String(36), default=None)
    actor_user_id: Mapped[str | None] = mapped_column(String(36), default=None)
    reason: Mapped[str] = mapped_column(String(50), nullable=False, default="AWARD_APPROVED")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_points_ledger_workspace_time", "workspace_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<PointsLedger to={self.to_user_id} amount={self.amount}>"


class WorkspacePointsBudget(Base):
    __tablename__ = "workspace_points_budgets"

    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), primary_key=True
    )
    total_budget: Mapped[int] = mapped_column(Integer, default=0)
    allocated: Mapped[int] = mapped_column(Integer, default=0)
    updated_by: Mapped[str | None] = mapped_column(String(36), default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<WorkspacePointsBudget ws={self.workspace_id} {self.allocated}/{self.total_budget}>"


class ChallengePointsBudget(Base):
    __tablename__ = "challenge_points_budgets"

    challenge_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), primary_key=True
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    total_budget: Mapped[int] = mapped_column(Integer, default=0)
    allocated: Mapped[int] = mapped_column(Integer, default=0)
    updated_by: Mapped[str | None] = mapped_column(String(36), default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<ChallengePointsBudget challenge={self.challenge_id} {self.allocated}/{self.total_budget}>"


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------
class InviteCode(Base):
    __tablename__ = "invite_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), default=None
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=Role.PARTICIPANT.value)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_uses: Mapped[int] = mapped_column(Integer, default=1)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    target_email: Mapped[str | None] = mapped_column(String(320), default=None)
    created_by: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    workspace: Mapped[Workspace] = relationship()
    challenge: Mapped[Challenge | None] = relationship()

    __table_args__ = (
        Index("ix_invite_codes_workspace", "workspace_id"),
    )

    def __repr__(self) -> str:
        return f"<InviteCode code={self.code!r} uses={self.used_count}/{self.max_uses}>"


class InviteRedemption(Base):
    __tablename__ = "invite_redemptions"

    invite_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("invite_codes.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    redeemed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<InviteRedemption invite={self.invite_id} user={self.user_id}>"


# ---------------------------------------------------------------------------
# RewardIssuance
# ---------------------------------------------------------------------------
class RewardIssuance(Base):
    __tablename__ = "reward_issuances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="SET NULL"), default=None
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int | None] = mapped_column(Integer, default=None)
    currency: Mapped[str | None] = mapped_column(String(3), default=None)
    sku_id: Mapped[str | None] = mapped_column(String(100), default=None)
    provider: Mapped[str | None] = mapped_column(String(50), default=None)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RewardStatus.PENDING.value
    )
    reward_stack_status: Mapped[str | None] = mapped_column(String(20), default=None)
    reward_stack_transaction_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_adjustment_id: Mapped[str | None] = mapped_column(String(100), default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, default=None)
    issued_by: Mapped[str | None] = mapped_column(String(36), default=None)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_reward_issuances_workspace_status", "workspace_id", "status"),
        Index("ix_reward_issuances_user_challenge", "user_id", "challenge_id"),
    )

    def __repr__(self) -> str:
        return f"<RewardIssuance id={self.id} type={self.type} status={self.status}>"


# ---------------------------------------------------------------------------
# ActivityEvent — append-only audit trail
# ---------------------------------------------------------------------------
class ActivityEvent(Base):
    __tablename__ = "activity_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), default=None
    )
    enrollment_id: Mapped[str | None] = mapped_column(String(36), default=None)
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    actor_user_id: Mapped[str | None] = mapped_column(String(36), default=None)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped[User | None] = relationship(foreign_keys=[user_id])

    __table_args__ = (
        Index("ix_activity_events_workspace_time", "workspace_id", "created_at"),
        Index("ix_activity_events_challenge", "challenge_id"),
    )

    def __repr__(self) -> str:
        return f"<ActivityEvent id={self.id} type={self.type}>"


# ---------------------------------------------------------------------------
# RateLimitEvent — durable events for sliding-window throttling
# ---------------------------------------------------------------------------
class RateLimitEvent(Base):
    __tablename__ = "rate_limit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(200), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_rate_limit_events_key_ts", "key", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<RateLimitEvent key={self.key!r} ts={self.timestamp}>"
