"""
tests/test_manager_service.py — Challenge Managers & Manager Review
====================================================================
Assignment rules, the two-stage review on challenges that require manager
approval, and the manager queue (service and HTTP).
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest
from conftest import add_member, auth, make_challenge, make_token, make_user, make_workspace
from fastapi.testclient import TestClient

from changemaker.api.deps import get_config, get_engine
from changemaker.api.main import app
from changemaker.config import ChangemakerConfig
from changemaker.database.models import Role, SubmissionStatus
from changemaker.errors import ConflictError, ValidationError, WorkspaceAccessError
from changemaker.services import activity_service, enrollment_service, manager_service


@dataclass
class Team:
    workspace_id: str
    challenge_id: str
    admin_id: str
    manager_id: str
    participant_id: str
    activity_id: str
    enrollment_id: str


def _team(engine, *, require_manager_approval=True) -> Team:
    ws = make_workspace(engine)
    admin = make_user(engine, "admin@example.com", supabase_user_id="sb-admin")
    manager = make_user(engine, "manny@example.com", supabase_user_id="sb-manny")
    pat = make_user(engine, "pat@example.com", supabase_user_id="sb-pat")
    add_member(engine, admin.id, ws.id, Role.ADMIN.value)
    add_member(engine, manager.id, ws.id, Role.MANAGER.value)
    add_member(engine, pat.id, ws.id)
    challenge = make_challenge(engine, ws.id, require_manager_approval=require_manager_approval)
    template = activity_service.create_template(
        engine, ws.id, name="Bike photo", type="PHOTO_UPLOAD", base_points=10,
    )
    activity = activity_service.create_activity(
        engine, ws.id, challenge.id, template_id=template.id, max_submissions=1
    )
    enrollment = enrollment_service.create_enrollment(
        engine, ws.id, user_id=pat.id, challenge_id=challenge.id
    )
    return Team(ws.id, challenge.id, admin.id, manager.id, pat.id, activity.id, enrollment.id)


def _submit(engine, team: Team, user_id: str | None = None, enrollment_id: str | None = None):
    return activity_service.create_submission(
        engine, team.workspace_id,
        user_id=user_id or team.participant_id,
        activity_id=team.activity_id,
        enrollment_id=enrollment_id or team.enrollment_id,
        text_content="rode in",
    )


def _assign(engine, team: Team, manager_id: str | None = None):
    return manager_service.assign_manager(
        engine, team.workspace_id, team.challenge_id,
        manager_id=manager_id or team.manager_id, assigned_by=team.admin_id,
    )


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------
class TestAssignment:
    def test_assign_and_list(self, db_engine):
        team = _team(db_engine)
        assignment = _assign(db_engine, team)
        assert (assignment.manager_id, assignment.assigned_by) == (team.manager_id, team.admin_id)

        [listed] = manager_service.list_challenge_managers(
            db_engine, team.workspace_id, team.challenge_id
        )
        assert listed.manager.email == "manny@example.com"

    def test_admin_can_be_assigned(self, db_engine):
        team = _team(db_engine)
        assert _assign(db_engine, team, team.admin_id).manager_id == team.admin_id

    def test_duplicate_assignment(self, db_engine):
        team = _team(db_engine)
        _assign(db_engine, team)
        with pytest.raises(ConflictError):
            _assign(db_engine, team)

    def test_participant_cannot_be_assigned(self, db_engine):
        team = _team(db_engine)
        with pytest.raises(ValidationError, match="managers or admins"):
            _assign(db_engine, team, team.participant_id)

    def test_non_member_cannot_be_assigned(self, db_engine):
        team = _team(db_engine)
        outsider = make_user(db_engine, "out@example.com")
        with pytest.raises(WorkspaceAccessError):
            _assign(db_engine, team, outsider.id)

    def test_unassign(self, db_engine):
        team = _team(db_engine)
        _assign(db_engine, team)
        manager_service.unassign_manager(
            db_engine, team.workspace_id, team.challenge_id, team.manager_id,
        )
        assert manager_service.list_challenge_managers(
            db_engine, team.workspace_id, team.challenge_id
        ) == []


# ---------------------------------------------------------------------------
# Manager review
# ---------------------------------------------------------------------------
class TestManagerReview:
    def test_approve_then_admin_final_review(self, db_engine):
        team = _team(db_engine)
        _assign(db_engine, team)
        sub = _submit(db_engine, team)

        reviewed = manager_service.manager_review_submission(
            db_engine, team.workspace_id, sub.id,
            action="approve", reviewer_id=team.manager_id, notes="looks good",
        )
        assert reviewed.status == SubmissionStatus.MANAGER_APPROVED
        assert reviewed.manager_notes == "looks good"
        assert reviewed.manager_reviewed_by == team.manager_id

        final, _ = activity_service.review_submission(
            db_engine, team.workspace_id, sub.id, action="approve", reviewer_id=team.admin_id,
        )
        assert final.status == SubmissionStatus.APPROVED
        assert final.points_awarded == 10

    def test_admin_cannot_skip_manager_approval(self, db_engine):
        team = _team(db_engine)
        sub = _submit(db_engine, team)
        with pytest.raises(ValidationError, match="manager approval"):
            activity_service.review_submission(
                db_engine, team.workspace_id, sub.id, action="approve", reviewer_id=team.admin_id,
            )
        rejected, _ = activity_service.review_submission(
            db_engine, team.workspace_id, sub.id, action="reject", reviewer_id=team.admin_id,
        )
        assert rejected.status == SubmissionStatus.REJECTED

    def test_direct_approval_without_requirement(self, db_engine):
        team = _team(db_engine, require_manager_approval=False)
        sub = _submit(db_engine, team)
        approved, _ = activity_service.review_submission(
            db_engine, team.workspace_id, sub.id, action="approve", reviewer_id=team.admin_id,
        )
        assert approved.status == SubmissionStatus.APPROVED

    def test_reject_allows_resubmission(self, db_engine):
        team = _team(db_engine)
        _assign(db_engine, team)
        sub = _submit(db_engine, team)
        sent_back = manager_service.manager_review_submission(
            db_engine, team.workspace_id, sub.id,
            action="reject", reviewer_id=team.manager_id, notes="photo is blurry",
        )
        assert sent_back.status == SubmissionStatus.NEEDS_REVISION
        # max_submissions=1, but the sent-back one does not count
        assert _submit(db_engine, team).status == SubmissionStatus.PENDING

    def test_self_approval_refused(self, db_engine):
        team = _team(db_engine)
        _assign(db_engine, team)
        own_enrollment = enrollment_service.create_enrollment(
            db_engine, team.workspace_id, user_id=team.manager_id, challenge_id=team.challenge_id,
        )
        own = _submit(db_engine, team, team.manager_id, own_enrollment.id)
        with pytest.raises(WorkspaceAccessError, match="your own submission"):
            manager_service.manager_review_submission(
                db_engine, team.workspace_id, own.id, action="approve", reviewer_id=team.manager_id,
            )

    def test_unassigned_manager_refused(self, db_engine):
        team = _team(db_engine)
        sub = _submit(db_engine, team)
        with pytest.raises(WorkspaceAccessError, match="not assigned"):
            manager_service.manager_review_submission(
                db_engine, team.workspace_id, sub.id, action="approve", reviewer_id=team.manager_id,
            )

    def test_admin_needs_no_assignment(self, db_engine):
        team = _team(db_engine)
        sub = _submit(db_engine, team)
        reviewed = manager_service.manager_review_submission(
            db_engine, team.workspace_id, sub.id, action="approve", reviewer_id=team.admin_id,
        )
        assert reviewed.status == SubmissionStatus.MANAGER_APPROVED

    def test_participant_refused(self, db_engine):
        team = _team(db_engine)
        other = make_user(db_engine, "kim@example.com")
        add_member(db_engine, other.id, team.workspace_id)
        sub = _submit(db_engine, team)
        with pytest.raises(WorkspaceAccessError, match="Manager access required"):
            manager_service.manager_review_submission(
                db_engine, team.workspace_id, sub.id, action="approve", reviewer_id=other.id,
            )

    def test_only_pending(self, db_engine):
        team = _team(db_engine)
        _assign(db_engine, team)
        sub = _submit(db_engine, team)
        manager_service.manager_review_submission(
            db_engine, team.workspace_id, sub.id, action="approve", reviewer_id=team.manager_id,
        )
        with pytest.raises(ValidationError, match="pending"):
            manager_service.manager_review_submission(
                db_engine, team.workspace_id, sub.id, action="reject", reviewer_id=team.manager_id,
            )

    def test_invalid_action(self, db_engine):
        team = _team(db_engine)
        sub = _submit(db_engine, team)
        with pytest.raises(ValidationError, match="approve' or 'reject"):
            manager_service.manager_review_submission(
                db_engine, team.workspace_id, sub.id, action="maybe", reviewer_id=team.manager_id,
            )


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------
class TestQueue:
    def test_queue_holds_assigned_challenges_only(self, db_engine):
        team = _team(db_engine)
        sub = _submit(db_engine, team)
        assert manager_service.list_manager_queue(
            db_engine, team.workspace_id, team.manager_id
        ) == []

        _assign(db_engine, team)
        other_challenge = make_challenge(db_engine, team.workspace_id, title="Other")
        template = activity_service.create_template(
            db_engine, team.workspace_id, name="Other task", type="TEXT_SUBMISSION",
        )
        activity_service.create_activity(
            db_engine, team.workspace_id, other_challenge.id, template_id=template.id
        )

        queue = manager_service.list_manager_queue(db_engine, team.workspace_id, team.manager_id)
        assert [s.id for s in queue] == [sub.id]
        assert queue[0].activity.challenge.id == team.challenge_id

    def test_status_filter(self, db_engine):
        team = _team(db_engine)
        _assign(db_engine, team)
        sub = _submit(db_engine, team)
        manager_service.manager_review_submission(
            db_engine, team.workspace_id, sub.id, action="approve", reviewer_id=team.manager_id,
        )
        assert manager_service.list_manager_queue(
            db_engine, team.workspace_id, team.manager_id, status="pending"
        ) == []
        [approved] = manager_service.list_manager_queue(
            db_engine, team.workspace_id, team.manager_id, status="MANAGER_APPROVED"
        )
        assert approved.id == sub.id
        with pytest.raises(ValidationError):
            manager_service.list_manager_queue(
                db_engine, team.workspace_id, team.manager_id, status="bogus"
            )

    def test_admin_queue_includes_manager_approved(self, db_engine):
        team = _team(db_engine)
        _assign(db_engine, team)
        sub = _submit(db_engine, team)
        manager_service.manager_review_submission(
            db_engine, team.workspace_id, sub.id, action="approve", reviewer_id=team.manager_id,
        )
        pending = activity_service.list_pending_submissions(db_engine, team.workspace_id)
        assert [s.id for s in pending] == [sub.id]


# ---------------------------------------------------------------------------
# HTTP routes
# ---------------------------------------------------------------------------
class TestManagerRoutes:
    @pytest.fixture
    def client(self, db_engine):
        app.dependency_overrides[get_engine] = lambda: db_engine
        app.dependency_overrides[get_config] = lambda: ChangemakerConfig(
            app_name="Changemaker", frontend_url="http://app.test",
        )
        yield TestClient(app, raise_server_exceptions=False)
        app.dependency_overrides.clear()

    def _headers(self, sub: str, email: str) -> dict:
        return auth(make_token(sub=sub, email=email))

    def test_assign_review_and_queue(self, client, db_engine):
        team = _team(db_engine)
        admin = self._headers("sb-admin", "admin@example.com")
        manny = self._headers("sb-manny", "manny@example.com")

        resp = client.post(
            f"/api/workspaces/acme/challenges/{team.challenge_id}/managers",
            headers=admin,
            json={"manager_id": team.manager_id},
        )
        assert resp.status_code == 201
        assert resp.json()["assignment"]["manager_id"] == team.manager_id

        listed = client.get(
            f"/api/workspaces/acme/challenges/{team.challenge_id}/managers", headers=admin
        ).json()["managers"]
        assert [m["manager"]["email"] for m in listed] == ["manny@example.com"]

        sub = _submit(db_engine, team)
        queue = client.get("/api/workspaces/acme/manager/queue?status=PENDING", headers=manny)
        assert queue.status_code == 200
        assert queue.json()["workspace_id"] == team.workspace_id
        [queued] = queue.json()["submissions"]
        assert queued["id"] == sub.id
        assert queued["activity"]["challenge_id"] == team.challenge_id

        resp = client.post(
            f"/api/workspaces/acme/submissions/{sub.id}/manager-review",
            headers=manny,
            json={"action": "approve", "notes": "ok"},
        )
        assert resp.status_code == 200
        assert resp.json()["submission"]["status"] == "MANAGER_APPROVED"
        assert resp.json()["submission"]["manager_notes"] == "ok"

    def test_manager_cannot_assign(self, client, db_engine):
        team = _team(db_engine)
        resp = client.post(
            f"/api/workspaces/acme/challenges/{team.challenge_id}/managers",
            headers=self._headers("sb-manny", "manny@example.com"),
            json={"manager_id": team.manager_id},
        )
        assert resp.status_code == 403

    def test_participant_has_no_queue(self, client, db_engine):
        _team(db_engine)
        resp = client.get(
            "/api/workspaces/acme/manager/queue", headers=self._headers("sb-pat", "pat@example.com")
        )
        assert resp.status_code == 403
        assert resp.json() == {"error": "Manager access required"}

    def test_invalid_action_is_400(self, client, db_engine):
        team = _team(db_engine)
        sub = _submit(db_engine, team)
        resp = client.post(
            f"/api/workspaces/acme/submissions/{sub.id}/manager-review",
            headers=self._headers("sb-admin", "admin@example.com"),
            json={"action": "maybe"},
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "action must be 'approve' or 'reject'"}
