"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Integration tests for the public, workspace and platform-admin routes
using the FastAPI TestClient against an in-memory database.

These tests verify:
- Auth guards (401 without a valid Supabase token, 403 for non-members)
- The ``{"error": ...}`` error envelope
- Workspace, challenge, enrollment and invite flows end to end
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import add_member, auth, make_challenge, make_token, make_user, make_workspace
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from changemaker.api.deps import get_config, get_engine
from changemaker.api.main import app
from changemaker.config import ChangemakerConfig
from changemaker.database.models import RewardStackSyncStatus, Role, User
from changemaker.rewardstack.auth import token_cache


@pytest.fixture
def client(db_engine):
    """A TestClient wired to the in-memory engine (lifespan not run)."""
    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: ChangemakerConfig(
        app_name="Changemaker", frontend_url="http://app.test",
    )
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return auth(make_token(sub="sb-admin", email="admin@example.com"))


@pytest.fixture
def member_headers():
    return auth(make_token(sub="sb-pat", email="pat@example.com"))


@pytest.fixture
def workspace(db_engine):
    """``acme`` with an ADMIN (sb-admin) and a PARTICIPANT (sb-pat)."""
    ws = make_workspace(db_engine)
    admin = make_user(db_engine, "admin@example.com", supabase_user_id="sb-admin")
    pat = make_user(db_engine, "pat@example.com", supabase_user_id="sb-pat")
    add_member(db_engine, admin.id, ws.id, Role.ADMIN.value)
    add_member(db_engine, pat.id, ws.id)
    return ws, admin, pat


def _iso(days: int) -> str:
    return (datetime.now(UTC) + timedelta(days=days)).isoformat()


# ===========================================================================
# Health & authentication
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestAuthentication:
    def test_missing_token(self, client):
        resp = client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Authentication required"}

    def test_invalid_token(self, client):
        resp = client.get("/api/auth/me", headers=auth("not-a-jwt"))
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid token"

    def test_wrong_audience(self, client):
        token = make_token(aud="anon")
        assert client.get("/api/auth/me", headers=auth(token)).status_code == 401

    def test_token_without_email(self, client):
        token = make_token(email="")
        resp = client.get("/api/auth/me", headers=auth(token))
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid user session data"

    def test_sync_user_creates_local_row(self, client):
        headers = auth(make_token(sub="sb-new", email="New@Example.com"))
        resp = client.post("/api/auth/sync-user", headers=headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["user"]["email"] == "new@example.com"
        assert body["user"]["role"] == "authenticated"

    def test_me_lists_workspaces(self, client, workspace, member_headers):
        resp = client.get("/api/auth/me", headers=member_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["user"]["email"] == "pat@example.com"
        assert [(w["slug"], w["role"]) for w in body["workspaces"]] == [("acme", "PARTICIPANT")]


# ===========================================================================
# Workspaces
# ===========================================================================
class TestWorkspaceRoutes:
    def test_create_and_fetch(self, client):
        headers = auth(make_token(sub="sb-founder", email="founder@example.com"))
        resp = client.post(
            "/api/workspaces", headers=headers, json={"slug": "green-team", "name": "Green Team"}
        )
        assert resp.status_code == 201
        assert resp.json()["workspace"]["slug"] == "green-team"

        resp = client.get("/api/workspaces/green-team", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["role"] == "ADMIN"

        listed = client.get("/api/workspaces", headers=headers).json()["workspaces"]
        assert [w["slug"] for w in listed] == ["green-team"]

    def test_duplicate_slug_conflicts(self, client, workspace, admin_headers):
        resp = client.post(
            "/api/workspaces", headers=admin_headers, json={"slug": "acme", "name": "Again"}
        )
        assert resp.status_code == 409
        assert "already taken" in resp.json()["error"]

    def test_missing_field_is_400(self, client, admin_headers):
        resp = client.post("/api/workspaces", headers=admin_headers, json={"slug": "x1"})
        assert resp.status_code == 400
        assert "name" in resp.json()["error"]

    def test_non_member_forbidden(self, client, workspace):
        outsider = auth(make_token(sub="sb-out", email="out@example.com"))
        resp = client.get("/api/workspaces/acme", headers=outsider)
        assert resp.status_code == 403
        assert resp.json() == {"error": "Access denied to workspace"}

    def test_unknown_workspace(self, client, admin_headers):
        assert client.get("/api/workspaces/nope", headers=admin_headers).status_code == 404

    def test_participant_cannot_update(self, client, workspace, member_headers):
        resp = client.patch("/api/workspaces/acme", headers=member_headers, json={"name": "X"})
        assert resp.status_code == 403

    def test_members_and_stats(self, client, workspace, member_headers):
        users = client.get("/api/workspaces/acme/users", headers=member_headers).json()["users"]
        assert [(u["email"], u["role"]) for u in users] == [
            ("admin@example.com", "ADMIN"),
            ("pat@example.com", "PARTICIPANT"),
        ]
        stats = client.get("/api/workspaces/acme/stats", headers=member_headers).json()["stats"]
        assert stats["total_members"] == 2


# ===========================================================================
# Challenges & enrollments
# ===========================================================================
class TestChallengeRoutes:
    def test_admin_creates_challenge(self, client, workspace, admin_headers):
        _, _, pat = workspace
        resp = client.post(
            "/api/workspaces/acme/challenges",
            headers=admin_headers,
            json={
                "title": "Bike Week",
                "description": "Ride to work",
                "start_date": _iso(1),
                "end_date": _iso(8),
                "reward_type": "points",
                "reward_config": {"amount": 50},
                "invited_participant_ids": [pat.id],
            },
        )
        assert resp.status_code == 201
        challenge = resp.json()["challenge"]
        assert challenge["status"] == "DRAFT"
        assert challenge["reward_label"] == "Points Earned"

        enrollments = client.get(
            f"/api/workspaces/acme/challenges/{challenge['id']}/enrollments",
            headers=admin_headers,
        ).json()["enrollments"]
        assert [(e["user"]["email"], e["status"]) for e in enrollments] == [
            ("pat@example.com", "INVITED"),
        ]

    def test_end_before_start_is_400(self, client, workspace, admin_headers):
        resp = client.post(
            "/api/workspaces/acme/challenges",
            headers=admin_headers,
            json={
                "title": "Backwards",
                "description": "x",
                "start_date": _iso(5),
                "end_date": _iso(1),
            },
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "End date must be after start date"}

    def test_participant_cannot_create(self, client, workspace, member_headers):
        resp = client.post(
            "/api/workspaces/acme/challenges",
            headers=member_headers,
            json={"title": "t", "description": "d", "start_date": _iso(1), "end_date": _iso(2)},
        )
        assert resp.status_code == 403

    def test_participant_joins_and_withdraws(self, client, db_engine, workspace, member_headers):
        ws, _, _ = workspace
        challenge = make_challenge(db_engine, ws.id)

        resp = client.post(
            "/api/workspaces/acme/enrollments",
            headers=member_headers,
            json={"challenge_id": challenge.id},
        )
        assert resp.status_code == 201
        enrollment_id = resp.json()["enrollment"]["id"]

        listed = client.get("/api/workspaces/acme/challenges", headers=member_headers).json()
        assert listed["challenges"][0]["enrollment"]["status"] == "ENROLLED"

        resp = client.patch(
            f"/api/workspaces/acme/enrollments/{enrollment_id}",
            headers=member_headers,
            json={"status": "withdrawn"},
        )
        assert resp.status_code == 200
        assert resp.json()["enrollment"]["status"] == "WITHDRAWN"
        assert resp.json()["reward"] is None

    def test_participant_cannot_complete_own_enrollment(
        self, client, db_engine, workspace, member_headers
    ):
        ws, _, _ = workspace
        challenge = make_challenge(db_engine, ws.id)
        enrollment_id = client.post(
            "/api/workspaces/acme/enrollments",
            headers=member_headers,
            json={"challenge_id": challenge.id},
        ).json()["enrollment"]["id"]

        resp = client.patch(
            f"/api/workspaces/acme/enrollments/{enrollment_id}",
            headers=member_headers,
            json={"status": "COMPLETED"},
        )
        assert resp.status_code == 403

    def test_participant_cannot_enroll_others(self, client, workspace, db_engine, member_headers):
        ws, admin, _ = workspace
        challenge = make_challenge(db_engine, ws.id)
        resp = client.post(
            "/api/workspaces/acme/enrollments",
            headers=member_headers,
            json={"challenge_id": challenge.id, "user_id": admin.id},
        )
        assert resp.status_code == 403

    def test_double_enrollment_conflicts(self, client, db_engine, workspace, member_headers):
        ws, _, _ = workspace
        challenge = make_challenge(db_engine, ws.id)
        payload = {"challenge_id": challenge.id}
        client.post("/api/workspaces/acme/enrollments", headers=member_headers, json=payload)
        resp = client.post("/api/workspaces/acme/enrollments", headers=member_headers, json=payload)
        assert resp.status_code == 409


# ===========================================================================
# Invites
# ===========================================================================
class TestInviteRoutes:
    def test_create_lookup_accept(self, client, workspace, admin_headers):
        resp = client.post(
            "/api/workspaces/acme/invites", headers=admin_headers, json={"max_uses": 2}
        )
        assert resp.status_code == 201
        code = resp.json()["invite"]["code"]
        assert resp.json()["url"] == f"http://app.test/invite/{code}"

        lookup = client.get(f"/api/invites/{code}")
        assert lookup.status_code == 200
        assert lookup.json()["invite"]["workspace"] == {"slug": "acme", "name": "Acme"}
        assert lookup.json()["invite"]["state"] == "valid"

        newcomer = auth(make_token(sub="sb-new", email="new@example.com"))
        resp = client.post("/api/invites/accept", headers=newcomer, json={"code": code})
        assert resp.status_code == 200
        assert resp.json()["role"] == "PARTICIPANT"
        assert resp.json()["is_existing_member"] is False
        assert client.get("/api/workspaces/acme", headers=newcomer).status_code == 200

    def test_unknown_code(self, client):
        resp = client.get("/api/invites/missing")
        assert resp.status_code == 404
        assert "error" in resp.json()

    def test_participant_cannot_create(self, client, workspace, member_headers):
        resp = client.post("/api/workspaces/acme/invites", headers=member_headers, json={})
        assert resp.status_code == 403


# ===========================================================================
# Account
# ===========================================================================
class TestAccountRoutes:
    def test_profile_saved_when_reward_sync_fails(self, client, db_engine, member_headers, monkeypatch):
        monkeypatch.delenv("REWARDSTACK_USERNAME", raising=False)
        monkeypatch.delenv("REWARDSTACK_PASSWORD", raising=False)
        token_cache.clear_all()
        ws = make_workspace(db_engine, reward_stack_enabled=True, program_id="PROG")
        pat = make_user(db_engine, "pat@example.com", supabase_user_id="sb-pat")
        add_member(db_engine, pat.id, ws.id)

        resp = client.put(
            "/api/account/profile", headers=member_headers, json={"city": "Springfield"}
        )

        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert resp.json()["profile"]["city"] == "Springfield"
        with Session(db_engine) as s:
            stored = s.get(User, pat.id)
            assert stored.city == "Springfield"
            assert stored.reward_stack_sync_status == RewardStackSyncStatus.FAILED

    def test_display_name_change_skips_sync(self, client, db_engine, member_headers):
        ws = make_workspace(db_engine, reward_stack_enabled=True, program_id="PROG")
        pat = make_user(db_engine, "pat@example.com", supabase_user_id="sb-pat")
        add_member(db_engine, pat.id, ws.id)

        resp = client.put(
            "/api/account/profile", headers=member_headers, json={"display_name": "Patty"}
        )

        assert resp.status_code == 200
        assert resp.json()["profile"]["display_name"] == "Patty"
        with Session(db_engine) as s:
            assert s.get(User, pat.id).reward_stack_sync_status == RewardStackSyncStatus.NOT_SYNCED


# ===========================================================================
# Leaderboards & metrics
# ===========================================================================
class TestLeaderboardRoutes:
    def test_activity_leaderboard_keys(self, client, db_engine, workspace, member_headers):
        ws, _, pat = workspace
        challenge = make_challenge(db_engine, ws.id)
        client.post(
            "/api/workspaces/acme/enrollments",
            headers=member_headers,
            json={"challenge_id": challenge.id},
        )

        resp = client.get(
            f"/api/workspaces/acme/leaderboard?challenge_id={challenge.id}", headers=member_headers
        )
        assert resp.status_code == 200
        body = resp.json()
        [entry] = body["leaderboard"]
        assert entry["user_id"] == pat.id
        assert entry["activity_count"] == 1
        assert set(body["stats"]) == {
            "top_count", "average_count", "participant_count", "hidden_count",
        }

    def test_challenge_metrics_keys(self, client, db_engine, workspace, admin_headers):
        ws, _, _ = workspace
        challenge = make_challenge(db_engine, ws.id)
        resp = client.get(
            f"/api/workspaces/acme/challenges/{challenge.id}/metrics", headers=admin_headers
        )
        assert resp.status_code == 200
        metrics = resp.json()["metrics"]
        assert metrics["invited_count"] == 0
        assert metrics["stalled_invites_count"] == 0
        assert resp.json()["leaderboard"] == []


# ===========================================================================
# Platform admin
# ===========================================================================
class TestPlatformAdmin:
    def test_requires_superadmin(self, client, workspace, admin_headers):
        resp = client.get("/api/admin/workspaces", headers=admin_headers)
        assert resp.status_code == 403
        assert resp.json() == {"error": "Platform admin access required"}

    def test_superadmin_lists_all(self, client, db_engine, workspace):
        make_user(db_engine, "root@example.com", supabase_user_id="sb-root", is_superadmin=True)
        headers = auth(make_token(sub="sb-root", email="root@example.com"))
        resp = client.get("/api/admin/workspaces", headers=headers)
        assert resp.status_code == 200
        assert [(w["slug"], w["member_count"]) for w in resp.json()["workspaces"]] == [("acme", 2)]
