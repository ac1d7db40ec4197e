"""Initial Changemaker schema

Revision ID: 0a1c5e7d9b21
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0a1c5e7d9b21"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    cols = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]
    if updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())
        )
    return cols


def _fk(target: str, ondelete: str = "CASCADE") -> sa.ForeignKey:
    return sa.ForeignKey(target, ondelete=ondelete)


def upgrade() -> None:
    """Create every table of the tenant, challenge, points and reward model."""
    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(50), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("active", sa.Boolean(), server_default=sa.true()),
        sa.Column("reward_stack_enabled", sa.Boolean(), server_default=sa.false()),
        sa.Column("reward_stack_environment", sa.String(20), nullable=False, server_default="QA"),
        sa.Column("reward_stack_program_id", sa.String(100)),
        sa.Column("reward_stack_org_id", sa.String(100)),
        sa.Column("reward_stack_webhook_secret", sa.String(200)),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("supabase_user_id", sa.String(64), unique=True),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("display_name", sa.String(100)),
        sa.Column("phone", sa.String(40)),
        sa.Column("address_line1", sa.String(200)),
        sa.Column("address_line2", sa.String(200)),
        sa.Column("city", sa.String(100)),
        sa.Column("state", sa.String(100)),
        sa.Column("zip_code", sa.String(20)),
        sa.Column("country", sa.String(100)),
        sa.Column("preferences", postgresql.JSONB()),
        sa.Column("is_pending", sa.Boolean(), server_default=sa.false()),
        sa.Column("is_superadmin", sa.Boolean(), server_default=sa.false()),
        sa.Column("reward_stack_participant_id", sa.String(100)),
        sa.Column(
            "reward_stack_sync_status", sa.String(20), nullable=False, server_default="NOT_SYNCED"
        ),
        sa.Column("reward_stack_last_sync", sa.DateTime(timezone=True)),
        *_timestamps(),
    )

    op.create_table(
        "workspace_memberships",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), _fk("users.id"), nullable=False),
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="PARTICIPANT"),
        sa.Column("is_primary", sa.Boolean(), server_default=sa.false()),
        sa.Column("preferences", postgresql.JSONB()),
        sa.Column("joined_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "workspace_id", name="uq_memberships_user_workspace"),
    )
    op.create_index("ix_memberships_workspace", "workspace_memberships", ["workspace_id"])

    op.create_table(
        "challenges",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("enrollment_deadline", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("reward_type", sa.String(20)),
        sa.Column("reward_config", postgresql.JSONB()),
        sa.Column("require_manager_approval", sa.Boolean(), server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("end_date > start_date", name="ck_challenges_date_order"),
    )
    op.create_index("ix_challenges_workspace", "challenges", ["workspace_id"])

    op.create_table(
        "challenge_assignments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("challenge_id", sa.String(36), _fk("challenges.id"), nullable=False),
        sa.Column("manager_id", sa.String(36), _fk("users.id"), nullable=False),
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), nullable=False),
        sa.Column("assigned_by", sa.String(36), _fk("users.id", "SET NULL")),
        sa.Column("assigned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "challenge_id", "manager_id", name="uq_challenge_assignments_challenge_manager"
        ),
    )
    op.create_index(
        "ix_challenge_assignments_manager_workspace",
        "challenge_assignments",
        ["manager_id", "workspace_id"],
    )

    op.create_table(
        "enrollments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), _fk("users.id"), nullable=False),
        sa.Column("challenge_id", sa.String(36), _fk("challenges.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="INVITED"),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "challenge_id", name="uq_enrollments_user_challenge"),
    )
    op.create_index(
        "ix_enrollments_challenge_status", "enrollments", ["challenge_id", "status"]
    )

    op.create_table(
        "activity_templates",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("type", sa.String(30), nullable=False, server_default="TEXT_SUBMISSION"),
        sa.Column("base_points", sa.Integer(), server_default="0"),
        sa.Column("requires_approval", sa.Boolean(), server_default=sa.true()),
        sa.Column("allow_multiple", sa.Boolean(), server_default=sa.false()),
        sa.Column("reward_type", sa.String(20)),
        sa.Column("reward_config", postgresql.JSONB()),
        *_timestamps(),
    )
    op.create_index("ix_activity_templates_workspace", "activity_templates", ["workspace_id"])

    op.create_table(
        "activities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("template_id", sa.String(36), _fk("activity_templates.id"), nullable=False),
        sa.Column("challenge_id", sa.String(36), _fk("challenges.id"), nullable=False),
        sa.Column("points_value", sa.Integer(), server_default="0"),
        sa.Column("max_submissions", sa.Integer(), server_default="1"),
        sa.Column("deadline", sa.DateTime(timezone=True)),
        sa.Column("is_required", sa.Boolean(), server_default=sa.false()),
        *_timestamps(updated=False),
    )
    op.create_index("ix_activities_challenge", "activities", ["challenge_id"])

    op.create_table(
        "reward_issuances",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), _fk("users.id"), nullable=False),
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), nullable=False),
        sa.Column("challenge_id", sa.String(36), _fk("challenges.id", "SET NULL")),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer()),
        sa.Column("currency", sa.String(3)),
        sa.Column("sku_id", sa.String(100)),
        sa.Column("provider", sa.String(50)),
        sa.Column("description", sa.Text()),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("reward_stack_status", sa.String(20)),
        sa.Column("reward_stack_transaction_id", sa.String(100)),
        sa.Column("reward_stack_adjustment_id", sa.String(100)),
        sa.Column("error", sa.Text()),
        sa.Column("metadata", postgresql.JSONB()),
        sa.Column("issued_by", sa.String(36)),
        sa.Column("issued_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index(
        "ix_reward_issuances_workspace_status", "reward_issuances", ["workspace_id", "status"]
    )
    op.create_index(
        "ix_reward_issuances_user_challenge", "reward_issuances", ["user_id", "challenge_id"]
    )

    op.create_table(
        "activity_submissions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("activity_id", sa.String(36), _fk("activities.id"), nullable=False),
        sa.Column("user_id", sa.String(36), _fk("users.id"), nullable=False),
        sa.Column("enrollment_id", sa.String(36), _fk("enrollments.id"), nullable=False),
        sa.Column("text_content", sa.Text()),
        sa.Column("file_urls", postgresql.JSONB()),
        sa.Column("link_url", sa.String(1000)),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("points_awarded", sa.Integer()),
        sa.Column("review_notes", sa.Text()),
        sa.Column("reviewed_by", sa.String(36), _fk("users.id", "SET NULL")),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("manager_notes", sa.Text()),
        sa.Column("manager_reviewed_by", sa.String(36), _fk("users.id", "SET NULL")),
        sa.Column("manager_reviewed_at", sa.DateTime(timezone=True)),
        sa.Column(
            "reward_issuance_id", sa.String(36), _fk("reward_issuances.id", "SET NULL")
        ),
        sa.Column("reward_issued", sa.Boolean(), server_default=sa.false()),
        sa.Column("submitted_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_submissions_activity_status", "activity_submissions", ["activity_id", "status"]
    )
    op.create_index("ix_submissions_user", "activity_submissions", ["user_id"])

    op.create_table(
        "points_balances",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), _fk("users.id"), nullable=False),
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), nullable=False),
        sa.Column("total_points", sa.Integer(), server_default="0"),
        sa.Column("available_points", sa.Integer(), server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "user_id", "workspace_id", name="uq_points_balances_user_workspace"
        ),
    )
    op.create_index(
        "ix_points_balances_workspace_total",
        "points_balances",
        ["workspace_id", "total_points"],
    )

    op.create_table(
        "points_ledger",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), nullable=False),
        sa.Column("challenge_id", sa.String(36), _fk("challenges.id", "SET NULL")),
        sa.Column("to_user_id", sa.String(36), _fk("users.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("submission_id", sa.String(36)),
        sa.Column("actor_user_id", sa.String(36)),
        sa.Column("reason", sa.String(50), nullable=False, server_default="AWARD_APPROVED"),
        *_timestamps(updated=False),
    )
    op.create_index(
        "ix_points_ledger_workspace_time", "points_ledger", ["workspace_id", "created_at"]
    )

    op.create_table(
        "workspace_points_budgets",
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), primary_key=True),
        sa.Column("total_budget", sa.Integer(), server_default="0"),
        sa.Column("allocated", sa.Integer(), server_default="0"),
        sa.Column("updated_by", sa.String(36)),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "challenge_points_budgets",
        sa.Column("challenge_id", sa.String(36), _fk("challenges.id"), primary_key=True),
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), nullable=False),
        sa.Column("total_budget", sa.Integer(), server_default="0"),
        sa.Column("allocated", sa.Integer(), server_default="0"),
        sa.Column("updated_by", sa.String(36)),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "invite_codes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), nullable=False),
        sa.Column("challenge_id", sa.String(36), _fk("challenges.id")),
        sa.Column("role", sa.String(20), nullable=False, server_default="PARTICIPANT"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_uses", sa.Integer(), server_default="1"),
        sa.Column("used_count", sa.Integer(), server_default="0"),
        sa.Column("target_email", sa.String(320)),
        sa.Column("created_by", sa.String(36), _fk("users.id", "SET NULL")),
        *_timestamps(updated=False),
    )
    op.create_index("ix_invite_codes_workspace", "invite_codes", ["workspace_id"])

    op.create_table(
        "invite_redemptions",
        sa.Column("invite_id", sa.String(36), _fk("invite_codes.id"), primary_key=True),
        sa.Column("user_id", sa.String(36), _fk("users.id"), primary_key=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "activity_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("workspace_id", sa.String(36), _fk("workspaces.id"), nullable=False),
        sa.Column("challenge_id", sa.String(36), _fk("challenges.id")),
        sa.Column("enrollment_id", sa.String(36)),
        sa.Column("user_id", sa.String(36), _fk("users.id", "SET NULL")),
        sa.Column("actor_user_id", sa.String(36)),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("metadata", postgresql.JSONB()),
        *_timestamps(updated=False),
    )
    op.create_index(
        "ix_activity_events_workspace_time", "activity_events", ["workspace_id", "created_at"]
    )
    op.create_index("ix_activity_events_challenge", "activity_events", ["challenge_id"])

    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(200), nullable=False),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_rate_limit_events_key_ts", "rate_limit_events", ["key", "timestamp"])


def downgrade() -> None:
    """Drop every table, children first."""
    for table in (
        "rate_limit_events",
        "activity_events",
        "invite_redemptions",
        "invite_codes",
        "challenge_points_budgets",
        "workspace_points_budgets",
        "points_ledger",
        "points_balances",
        "activity_submissions",
        "reward_issuances",
        "activities",
        "activity_templates",
        "enrollments",
        "challenge_assignments",
        "challenges",
        "workspace_memberships",
        "users",
        "workspaces",
    ):
        op.drop_table(table)
