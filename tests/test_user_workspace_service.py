"""
tests/test_user_workspace_service.py — Users, Profiles & Workspaces
====================================================================
"""

from __future__ import annotations

import pytest
from conftest import add_member, make_challenge, make_user, make_workspace
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from changemaker.database.models import Role, User, Workspace
from changemaker.database.seed import seed_demo_workspace
from changemaker.errors import ConflictError, ValidationError
from changemaker.services import enrollment_service, user_service, workspace_service


# ---------------------------------------------------------------------------
# Identity sync
# ---------------------------------------------------------------------------
class TestSyncUserFromClaims:
    def test_creates_user_on_first_login(self, db_engine):
        user = user_service.sync_user_from_claims(
            db_engine,
            supabase_user_id="sb-1",
            email="Alice@Example.com",
            user_metadata={"first_name": "Alice", "timezone": "UTC"},
        )
        assert user.email == "alice@example.com"
        assert user.first_name == "Alice"
        assert user.preferences == {"first_name": "Alice", "timezone": "UTC"}
        assert user_service.get_user_by_supabase_id(db_engine, "sb-1").id == user.id

    def test_links_pending_invitee(self, db_engine):
        pending = make_user(db_engine, "pat@example.com", is_pending=True)
        user = user_service.sync_user_from_claims(
            db_engine, supabase_user_id="sb-pat", email="pat@example.com",
        )
        assert user.id == pending.id
        assert user.supabase_user_id == "sb-pat"
        assert user.is_pending is False

    def test_local_preferences_win(self, db_engine):
        user_service.sync_user_from_claims(
            db_engine, supabase_user_id="sb-1", email="a@example.com",
            user_metadata={"timezone": "UTC"},
        )
        user = user_service.sync_user_from_claims(
            db_engine, supabase_user_id="sb-1", email="a@example.com",
            user_metadata={"timezone": "PST", "bio": "hi"},
        )
        assert user.preferences == {"timezone": "UTC", "bio": "hi"}
        with Session(db_engine) as s:
            assert s.scalar(select(func.count()).select_from(User)) == 1

    @pytest.mark.parametrize("sub, email", [("", "a@example.com"), ("sb-1", "")])
    def test_incomplete_claims(self, db_engine, sub, email):
        with pytest.raises(ValidationError):
            user_service.sync_user_from_claims(db_engine, supabase_user_id=sub, email=email)


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------
class TestProfile:
    def test_normalize_splits_full_name(self):
        fields, prefs = user_service.normalize_profile_input({
            "full_name": "Mary Jane Watson",
            "city": "  ",
            "display_name": "",
            "reduced_motion": True,
            "bio": " hello ",
        })
        assert fields == {"first_name": "Mary", "last_name": "Jane Watson", "city": None}
        assert prefs == {"reduced_motion": True, "bio": "hello"}

    def test_notification_prefs_merge(self):
        _, prefs = user_service.normalize_profile_input(
            {"notification_prefs": {"email": False}},
            {"notification_prefs": {"email": True, "digest": "weekly"}},
        )
        assert prefs["notification_prefs"] == {"email": False, "digest": "weekly"}

    def test_address_change_needs_sync(self, db_engine):
        user = make_user(db_engine)
        updated, needs_sync = user_service.update_profile(
            db_engine, user.id, {"city": "Springfield"}
        )
        assert updated.city == "Springfield"
        assert needs_sync is True

    def test_display_name_does_not_need_sync(self, db_engine):
        user = make_user(db_engine)
        updated, needs_sync = user_service.update_profile(
            db_engine, user.id, {"display_name": "Al", "timezone": "UTC"}
        )
        assert updated.display_name == "Al"
        assert updated.preferences == {"timezone": "UTC"}
        assert needs_sync is False

    def test_empty_update(self, db_engine):
        user = make_user(db_engine)
        with pytest.raises(ValidationError, match="No valid fields"):
            user_service.update_profile(db_engine, user.id, {"unknown": 1})

    def test_reward_sync_workspaces(self, db_engine):
        user = make_user(db_engine)
        enabled = make_workspace(db_engine, "on", reward_stack_enabled=True, program_id="P")
        disabled = make_workspace(db_engine, "off")
        add_member(db_engine, user.id, enabled.id)
        add_member(db_engine, user.id, disabled.id)
        assert user_service.reward_sync_workspaces(db_engine, user.id) == [enabled.id]

    def test_profile_dict(self, db_engine):
        user = make_user(db_engine, first_name="Al")
        data = user_service.profile_dict(user)
        assert data["email"] == "alice@example.com"
        assert data["first_name"] == "Al"
        assert data["preferences"] == {}


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------
class TestWorkspaces:
    def test_creator_becomes_primary_admin(self, db_engine):
        user = make_user(db_engine)
        ws = workspace_service.create_workspace(
            db_engine, slug=" Green-Team ", name="Green Team", creator_id=user.id,
        )
        assert ws.slug == "green-team"
        membership = workspace_service.get_membership(db_engine, user.id, ws.id)
        assert membership.role == Role.ADMIN
        assert membership.is_primary is True
        assert workspace_service.verify_workspace_admin(db_engine, user.id, ws.id)

        second = workspace_service.create_workspace(
            db_engine, slug="blue", name="Blue", creator_id=user.id,
        )
        assert workspace_service.get_membership(db_engine, user.id, second.id).is_primary is False
        assert [ws.slug for ws, _ in workspace_service.list_user_workspaces(db_engine, user.id)] == [
            "green-team", "blue",
        ]

    @pytest.mark.parametrize("slug", ["a", "Has Space", "x" * 51, "under_score"])
    def test_invalid_slug(self, db_engine, slug):
        user = make_user(db_engine)
        with pytest.raises(ValidationError):
            workspace_service.create_workspace(db_engine, slug=slug, name="X", creator_id=user.id)

    def test_duplicate_slug(self, db_engine):
        user = make_user(db_engine)
        make_workspace(db_engine, "acme")
        with pytest.raises(ConflictError, match="already taken"):
            workspace_service.create_workspace(
                db_engine, slug="acme", name="Acme 2", creator_id=user.id
            )

    def test_update(self, db_engine):
        ws = make_workspace(db_engine)
        updated = workspace_service.update_workspace(
            db_engine, ws.id, name=" Acme Corp ", active=False
        )
        assert (updated.name, updated.active) == ("Acme Corp", False)
        with pytest.raises(ValidationError):
            workspace_service.update_workspace(db_engine, ws.id, name="  ")

    def test_access_checks(self, db_engine):
        ws = make_workspace(db_engine)
        member = make_user(db_engine)
        outsider = make_user(db_engine, "out@example.com")
        add_member(db_engine, member.id, ws.id)

        assert workspace_service.verify_workspace_access(db_engine, member.id, ws.id)
        assert not workspace_service.verify_workspace_admin(db_engine, member.id, ws.id)
        assert not workspace_service.verify_workspace_access(db_engine, outsider.id, ws.id)
        assert workspace_service.get_member_role(db_engine, outsider.id, ws.id) is None

    def test_members_ordered_by_email(self, db_engine):
        ws = make_workspace(db_engine)
        for email in ("zed@example.com", "amy@example.com"):
            add_member(db_engine, make_user(db_engine, email).id, ws.id)
        members = workspace_service.list_workspace_members(db_engine, ws.id)
        assert [m.user.email for m in members] == ["amy@example.com", "zed@example.com"]

    def test_stats(self, db_engine):
        ws = make_workspace(db_engine)
        user = make_user(db_engine)
        add_member(db_engine, user.id, ws.id)
        challenge = make_challenge(db_engine, ws.id)
        enrollment_service.create_enrollment(
            db_engine, ws.id, user_id=user.id, challenge_id=challenge.id
        )

        assert workspace_service.get_workspace_stats(db_engine, ws.id) == {
            "total_members": 1,
            "total_challenges": 1,
            "total_enrollments": 1,
            "pending_submissions": 0,
        }
        overview = workspace_service.list_all_workspaces(db_engine)
        assert overview[0]["member_count"] == 1
        assert overview[0]["challenge_count"] == 1


class TestRewardStackConfig:
    def test_enable_requires_program(self, db_engine):
        ws = make_workspace(db_engine)
        with pytest.raises(ValidationError, match="program ID is required"):
            workspace_service.update_rewardstack_config(db_engine, ws.id, enabled=True)

    def test_enable_with_program(self, db_engine):
        ws = make_workspace(db_engine)
        updated = workspace_service.update_rewardstack_config(
            db_engine, ws.id, enabled=True, program_id=" PROG ", environment="production",
        )
        assert updated.reward_stack_enabled is True
        assert updated.reward_stack_program_id == "PROG"
        assert updated.reward_stack_environment == "PRODUCTION"

    def test_invalid_environment(self, db_engine):
        ws = make_workspace(db_engine)
        with pytest.raises(ValidationError, match="environment"):
            workspace_service.update_rewardstack_config(db_engine, ws.id, environment="staging")


# ---------------------------------------------------------------------------
# Demo seed
# ---------------------------------------------------------------------------
def test_seed_is_idempotent(db_engine):
    assert seed_demo_workspace(db_engine) is True
    assert seed_demo_workspace(db_engine) is False

    ws = workspace_service.get_workspace_by_slug(db_engine, "demo")
    stats = workspace_service.get_workspace_stats(db_engine, ws.id)
    assert stats["total_members"] == 3
    assert stats["total_challenges"] == 1
    assert stats["total_enrollments"] == 2
    with Session(db_engine) as s:
        assert s.scalar(select(func.count()).select_from(Workspace)) == 1
