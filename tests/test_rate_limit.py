"""
tests/test_rate_limit.py — Bulk Invite Rate Limiting Tests
===========================================================
The bulk participant endpoint is limited per workspace and admin,
returning 429 with a Retry-After header once the window is full.
"""

from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

from changemaker.api.deps import get_config, get_engine
from changemaker.api.main import app
from changemaker.api.rate_limit import RateLimiter
from changemaker.config import ChangemakerConfig
from changemaker.database.models import RateLimitEvent, Role
from changemaker.errors import RateLimitError


# ---------------------------------------------------------------------------
# Unit tests for the RateLimiter core (DB-backed)
# ---------------------------------------------------------------------------
class TestRateLimiter:
    """Test the sliding-window rate limiter in isolation (DB-backed)."""

    @pytest.fixture(autouse=True)
    def _limiter(self, db_engine):
        """Create a fresh DB-backed limiter for each test."""
        self.limiter = RateLimiter(max_requests=5, window_seconds=60, engine=db_engine)
        self.engine = db_engine

    def _clear(self):
        with Session(self.engine) as s:
            s.query(RateLimitEvent).delete()
            s.commit()

    def test_allows_requests_within_limit(self):
        self._clear()
        for _ in range(5):
            allowed, info = self.limiter.check("user1")
            assert allowed
            self.limiter.record("user1")

    def test_blocks_after_limit_exceeded(self):
        self._clear()
        limiter = RateLimiter(max_requests=3, window_seconds=60, engine=self.engine)
        for _ in range(3):
            limiter.record("user1")

        allowed, info = limiter.check("user1")
        assert not allowed
        assert info["remaining"] == 0
        assert info["reset"] > 0

    def test_separate_keys_have_separate_limits(self):
        self._clear()
        limiter = RateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("user1")
        limiter.record("user1")

        allowed1, _ = limiter.check("user1")
        assert not allowed1

        allowed2, _ = limiter.check("user2")
        assert allowed2

    def test_remaining_count_decreases(self):
        self._clear()
        _, info = self.limiter.check("user1")
        assert info["remaining"] == 5

        self.limiter.record("user1")
        _, info = self.limiter.check("user1")
        assert info["remaining"] == 4

    def test_hit_raises_when_full(self):
        self._clear()
        limiter = RateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.hit("user1")
        limiter.hit("user1")
        with pytest.raises(RateLimitError) as excinfo:
            limiter.hit("user1")
        assert excinfo.value.retry_after >= 1

    def test_reset_clears_specific_key(self):
        self._clear()
        limiter = RateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("user1")
        limiter.record("user1")
        limiter.record("user2")

        limiter.reset("user1")

        allowed1, _ = limiter.check("user1")
        assert allowed1

        _, info2 = limiter.check("user2")
        assert info2["remaining"] == 1

    def test_reset_all(self):
        self._clear()
        limiter = RateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("user1")
        limiter.record("user2")

        limiter.reset()

        assert limiter.check("user1")[0]
        assert limiter.check("user2")[0]


# ---------------------------------------------------------------------------
# Integration tests with FastAPI TestClient
# ---------------------------------------------------------------------------
class TestBulkInviteThrottle:
    """The limiter dependency end-to-end via TestClient."""

    @pytest.fixture
    def client(self, db_engine):
        """A test client with a limit of 3 bulk requests per window."""
        import changemaker.api.rate_limit as rl_mod

        original_limiter = rl_mod._limiter
        test_limiter = RateLimiter(max_requests=3, window_seconds=60, engine=db_engine)
        rl_mod._limiter = test_limiter

        from fastapi.testclient import TestClient

        app.dependency_overrides[get_engine] = lambda: db_engine
        app.dependency_overrides[get_config] = lambda: ChangemakerConfig(
            app_name="Changemaker", frontend_url="http://app.test",
        )

        client = TestClient(app, raise_server_exceptions=False)
        yield client, test_limiter

        app.dependency_overrides.clear()
        rl_mod._limiter = original_limiter

    @pytest.fixture
    def workspace(self, db_engine):
        from conftest import add_member, make_user, make_workspace

        ws = make_workspace(db_engine)
        admin = make_user(db_engine, "admin@example.com", supabase_user_id="sb-admin")
        other = make_user(db_engine, "other@example.com", supabase_user_id="sb-other")
        add_member(db_engine, admin.id, ws.id, Role.ADMIN.value)
        add_member(db_engine, other.id, ws.id, Role.ADMIN.value)
        return ws, admin, other

    def _headers(self, sub: str, email: str) -> dict:
        from conftest import auth, make_token
        return auth(make_token(sub=sub, email=email))

    def test_health_not_limited(self, client):
        test_client, _ = client
        for _ in range(10):
            assert test_client.get("/api/health").status_code == 200

    def test_returns_429_after_limit(self, client, workspace):
        test_client, limiter = client
        ws, admin, _ = workspace
        for _ in range(3):
            limiter.record(f"participants-bulk:{ws.id}:{admin.id}")

        resp = test_client.post(
            "/api/workspaces/acme/participants/bulk",
            headers=self._headers("sb-admin", "admin@example.com"),
            json=[{"email": "new@example.com"}],
        )
        assert resp.status_code == 429
        assert "Retry-After" in resp.headers
        assert resp.json()["error"].startswith("Too many requests")

    def test_admins_have_separate_limits(self, client, workspace):
        test_client, limiter = client
        ws, admin, _ = workspace
        for _ in range(3):
            limiter.record(f"participants-bulk:{ws.id}:{admin.id}")

        resp = test_client.post(
            "/api/workspaces/acme/participants/bulk",
            headers=self._headers("sb-other", "other@example.com"),
            json=[{"email": "new@example.com"}],
        )
        assert resp.status_code == 200
        assert resp.json()["summary"]["invited"] == 1

    def test_requests_count_toward_limit(self, client, workspace):
        test_client, _ = client
        headers = self._headers("sb-admin", "admin@example.com")
        codes = [
            test_client.post(
                "/api/workspaces/acme/participants/bulk",
                headers=headers,
                json=[{"email": f"p{i}@example.com"}],
            ).status_code
            for i in range(4)
        ]
        assert codes == [200, 200, 200, 429]

    def test_unauthenticated_request_rejected_before_limiter(self, client):
        test_client, _ = client
        resp = test_client.post("/api/workspaces/acme/participants/bulk", json=[])
        assert resp.status_code == 401

    def test_superadmin_lifts_throttle(self, client, db_engine, workspace):
        from conftest import make_user

        test_client, limiter = client
        ws, admin, _ = workspace
        key = f"participants-bulk:{ws.id}:{admin.id}"
        for _ in range(3):
            limiter.record(key)
        limiter.record("participants-bulk:elsewhere")
        make_user(db_engine, "root@example.com", supabase_user_id="sb-root", is_superadmin=True)

        resp = test_client.delete(
            "/api/admin/rate-limits",
            params={"key": key},
            headers=self._headers("sb-root", "root@example.com"),
        )
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "key": key}
        assert limiter.check(key)[1]["remaining"] == 3
        assert limiter.check("participants-bulk:elsewhere")[1]["remaining"] == 2

    def test_workspace_admin_cannot_lift_throttle(self, client, workspace):
        test_client, _ = client
        resp = test_client.delete(
            "/api/admin/rate-limits", headers=self._headers("sb-admin", "admin@example.com"),
        )
        assert resp.status_code == 403
