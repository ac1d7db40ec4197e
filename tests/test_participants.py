"""
tests/test_participants.py — RewardSTACK Participant Sync
==========================================================
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from conftest import add_member, make_user, make_workspace, run_async
from sqlalchemy.orm import Session

from changemaker.database.models import RewardStackSyncStatus, User
from changemaker.rewardstack.auth import TokenCache
from changemaker.rewardstack.client import RewardStackClient
from changemaker.rewardstack.participants import (
    map_user_to_participant,
    should_sync_user,
    sync_participant,
    sync_workspace_participants,
)

pytestmark = pytest.mark.usefixtures("rewardstack_credentials")


class FakeRewardStack:
    """Records API calls; ``responses`` maps (method, path) to a Response."""

    def __init__(self, responses: dict | None = None):
        self.responses = responses or {}
        self.calls: list[tuple[str, str, dict | None]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            return httpx.Response(200, json={"token": "tok", "expires": 9_999_999_999})
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, request.url.path, body))
        return self.responses.get(
            (request.method, request.url.path), httpx.Response(200, json={})
        )

    def client(self) -> RewardStackClient:
        return RewardStackClient("QA", transport=httpx.MockTransport(self), cache=TokenCache())


@pytest.fixture
def workspace(db_engine):
    return make_workspace(db_engine, reward_stack_enabled=True, program_id="PROG")


def _member(engine, workspace, email="alice@example.com", **fields):
    user = make_user(engine, email, first_name="Alice", last_name="Ng", **fields)
    add_member(engine, user.id, workspace.id)
    return user


def _reload(engine, user_id) -> User:
    with Session(engine) as s:
        user = s.get(User, user_id)
        s.expunge(user)
        return user


# ---------------------------------------------------------------------------
# Mapping & staleness
# ---------------------------------------------------------------------------
class TestMapping:
    def test_omits_empty_fields(self):
        user = User(id="u1", email="a@example.com", first_name="Ann", city="", zip_code="02139")
        assert map_user_to_participant(user) == {
            "email_address": "a@example.com",
            "external_id": "u1",
            "firstname": "Ann",
            "zip": "02139",
        }


class TestShouldSync:
    NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)

    def test_unsynced_and_failed_always_sync(self):
        assert should_sync_user("NOT_SYNCED", None, now=self.NOW)
        assert should_sync_user("FAILED", self.NOW, now=self.NOW)

    def test_pending_never_syncs(self):
        assert not should_sync_user("PENDING", None, now=self.NOW)

    def test_synced_only_when_stale(self):
        fresh = self.NOW - timedelta(minutes=30)
        stale = self.NOW - timedelta(minutes=90)
        assert not should_sync_user("SYNCED", fresh, now=self.NOW)
        assert should_sync_user("SYNCED", stale, now=self.NOW)
        assert should_sync_user("SYNCED", stale.replace(tzinfo=None), now=self.NOW)


# ---------------------------------------------------------------------------
# sync_participant
# ---------------------------------------------------------------------------
class TestSyncParticipant:
    def test_creates_participant(self, db_engine, workspace):
        user = _member(db_engine, workspace)
        api = FakeRewardStack({
            ("POST", "/api/program/PROG/participant"): httpx.Response(200, json={"unique_id": "P-1"}),
        })

        result = run_async(sync_participant(db_engine, user.id, workspace.id, client=api.client()))

        assert result.success
        assert (result.participant_id, result.action) == ("P-1", "created")
        _, _, body = api.calls[0]
        assert body["email_address"] == "alice@example.com"
        assert body["external_id"] == user.id
        assert body["program"] == "PROG"

        stored = _reload(db_engine, user.id)
        assert stored.reward_stack_participant_id == "P-1"
        assert stored.reward_stack_sync_status == RewardStackSyncStatus.SYNCED
        assert stored.reward_stack_last_sync is not None

    def test_updates_existing_participant(self, db_engine, workspace):
        user = _member(db_engine, workspace, reward_stack_participant_id="P-9")
        api = FakeRewardStack()

        result = run_async(sync_participant(db_engine, user.id, workspace.id, client=api.client()))

        assert (result.participant_id, result.action) == ("P-9", "updated")
        assert [(m, p) for m, p, _ in api.calls] == [("PATCH", "/api/program/PROG/participant/P-9")]

    def test_recreates_participant_missing_upstream(self, db_engine, workspace):
        user = _member(db_engine, workspace, reward_stack_participant_id="GONE")
        api = FakeRewardStack({
            ("PATCH", "/api/program/PROG/participant/GONE"): httpx.Response(404),
            ("POST", "/api/program/PROG/participant"): httpx.Response(200, json={"unique_id": "P-2"}),
        })

        result = run_async(sync_participant(db_engine, user.id, workspace.id, client=api.client()))

        assert (result.participant_id, result.action) == ("P-2", "created")
        assert _reload(db_engine, user.id).reward_stack_participant_id == "P-2"

    def test_upstream_rejection_marks_failed(self, db_engine, workspace):
        user = _member(db_engine, workspace)
        api = FakeRewardStack({
            ("POST", "/api/program/PROG/participant"): httpx.Response(
                400, json={"message": "email_address is invalid"}
            ),
        })

        result = run_async(sync_participant(db_engine, user.id, workspace.id, client=api.client()))

        assert not result.success
        assert "email_address is invalid" in result.error
        assert _reload(db_engine, user.id).reward_stack_sync_status == RewardStackSyncStatus.FAILED

    def test_disabled_workspace_fails_without_calls(self, db_engine):
        ws = make_workspace(db_engine, "plain")
        user = _member(db_engine, ws)
        api = FakeRewardStack()

        result = run_async(sync_participant(db_engine, user.id, ws.id, client=api.client()))

        assert not result.success
        assert "not enabled" in result.error
        assert api.calls == []

    def test_non_member_fails(self, db_engine, workspace):
        user = make_user(db_engine, "stranger@example.com")
        result = run_async(
            sync_participant(db_engine, user.id, workspace.id, client=FakeRewardStack().client())
        )
        assert not result.success
        assert "not a member" in result.error


class TestBulkSync:
    def test_skips_fresh_members_unless_forced(self, db_engine, workspace):
        _member(db_engine, workspace, "new@example.com")
        _member(
            db_engine, workspace, "fresh@example.com",
            reward_stack_participant_id="P-F",
            reward_stack_sync_status=RewardStackSyncStatus.SYNCED.value,
            reward_stack_last_sync=datetime.now(UTC),
        )
        api = FakeRewardStack({
            ("POST", "/api/program/PROG/participant"): httpx.Response(200, json={"unique_id": "P-N"}),
        })

        summary = run_async(sync_workspace_participants(db_engine, workspace.id, client=api.client()))
        assert (summary.total, summary.synced, summary.skipped, summary.failed) == (2, 1, 1, 0)

        forced = run_async(
            sync_workspace_participants(db_engine, workspace.id, force=True, client=api.client())
        )
        assert (forced.synced, forced.skipped) == (2, 0)

    def test_pending_users_are_excluded(self, db_engine, workspace):
        _member(db_engine, workspace, "invited@example.com", is_pending=True)
        summary = run_async(
            sync_workspace_participants(db_engine, workspace.id, client=FakeRewardStack().client())
        )
        assert summary.total == 0
