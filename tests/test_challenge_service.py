"""
tests/test_challenge_service.py — Challenges & Enrollment
==========================================================
Date validation, challenge CRUD, status changes, metrics and the
enrollment state machine against an in-memory SQLite database.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import add_member, make_challenge, make_user, make_workspace
from sqlalchemy import select
from sqlalchemy.orm import Session

from changemaker.database.models import (
    ActivityEvent,
    ChallengeStatus,
    EnrollmentStatus,
    RewardIssuance,
    Role,
)
from changemaker.errors import (
    ConflictError,
    ResourceNotFoundError,
    ValidationError,
    WorkspaceAccessError,
)
from changemaker.services import challenge_service, enrollment_service

NOW = datetime.now(UTC)


@pytest.fixture
def workspace(db_engine):
    return make_workspace(db_engine)


@pytest.fixture
def admin(db_engine, workspace):
    user = make_user(db_engine, "admin@example.com")
    add_member(db_engine, user.id, workspace.id, Role.ADMIN.value)
    return user


@pytest.fixture
def member(db_engine, workspace):
    user = make_user(db_engine, "pat@example.com")
    add_member(db_engine, user.id, workspace.id)
    return user


def _event_types(engine, challenge_id) -> list[str]:
    with Session(engine) as s:
        return list(s.scalars(
            select(ActivityEvent.type)
            .where(ActivityEvent.challenge_id == challenge_id)
            .order_by(ActivityEvent.created_at)
        ).all())


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
class TestValidateChallengeData:
    def _validate(self, **overrides):
        values = {
            "title": "Bike Week",
            "description": "Ride in",
            "start_date": "2025-06-01T00:00:00Z",
            "end_date": "2025-06-08T00:00:00Z",
        }
        values.update(overrides)
        return challenge_service.validate_challenge_data(**values)

    def test_deadline_defaults_to_start(self):
        dates = self._validate()
        assert dates.enrollment_deadline == dates.start_date
        assert dates.start_date.tzinfo is not None

    def test_end_must_follow_start(self):
        with pytest.raises(ValidationError, match="End date must be after start date"):
            self._validate(end_date="2025-06-01T00:00:00Z")

    def test_deadline_after_end_rejected(self):
        with pytest.raises(ValidationError, match="deadline"):
            self._validate(enrollment_deadline="2025-06-09T00:00:00Z")

    @pytest.mark.parametrize("field", ["title", "description"])
    def test_blank_text_rejected(self, field):
        with pytest.raises(ValidationError):
            self._validate(**{field: "   "})

    def test_unparseable_date(self):
        with pytest.raises(ValidationError, match="Invalid startDate"):
            self._validate(start_date="next tuesday")


# ---------------------------------------------------------------------------
# CRUD & status
# ---------------------------------------------------------------------------
class TestChallengeCrud:
    def test_create_is_draft_with_enrollments(self, db_engine, workspace, admin, member):
        other = make_user(db_engine, "sam@example.com")
        add_member(db_engine, other.id, workspace.id)

        challenge = challenge_service.create_challenge(
            db_engine,
            workspace.id,
            title=" Bike Week ",
            description="Ride in",
            start_date=NOW + timedelta(days=1),
            end_date=NOW + timedelta(days=8),
            invited_user_ids=[member.id, other.id],
            enrolled_user_ids=[other.id],
            actor_user_id=admin.id,
        )

        assert challenge.status == ChallengeStatus.DRAFT
        assert challenge.title == "Bike Week"
        statuses = {
            e.user_id: e.status
            for e in enrollment_service.list_challenge_enrollments(db_engine, workspace.id, challenge.id)
        }
        assert statuses == {member.id: "INVITED", other.id: "ENROLLED"}
        assert _event_types(db_engine, challenge.id) == ["CHALLENGE_CREATED"]

    def test_create_rejects_non_members(self, db_engine, workspace, admin):
        outsider = make_user(db_engine, "out@example.com")
        with pytest.raises(ValidationError, match="not members"):
            challenge_service.create_challenge(
                db_engine,
                workspace.id,
                title="T",
                description="D",
                start_date=NOW + timedelta(days=1),
                end_date=NOW + timedelta(days=2),
                enrolled_user_ids=[outsider.id],
            )

    def test_create_rejects_unknown_reward_type(self, db_engine, workspace):
        with pytest.raises(ValidationError, match="Invalid reward type"):
            challenge_service.create_challenge(
                db_engine,
                workspace.id,
                title="T",
                description="D",
                start_date=NOW + timedelta(days=1),
                end_date=NOW + timedelta(days=2),
                reward_type="vouchers",
            )

    def test_update_revalidates_dates(self, db_engine, workspace):
        challenge = make_challenge(db_engine, workspace.id)
        with pytest.raises(ValidationError, match="End date must be after start date"):
            challenge_service.update_challenge(
                db_engine, workspace.id, challenge.id, {"end_date": NOW.isoformat()}
            )

        updated = challenge_service.update_challenge(
            db_engine, workspace.id, challenge.id,
            {"title": "Renamed", "reward_type": "points", "reward_config": {"amount": 10}},
        )
        assert updated.title == "Renamed"
        assert updated.reward_config == {"amount": 10}

    def test_other_workspace_cannot_see_challenge(self, db_engine, workspace):
        challenge = make_challenge(db_engine, workspace.id)
        other = make_workspace(db_engine, "other")
        with pytest.raises(ResourceNotFoundError):
            challenge_service.get_challenge(db_engine, other.id, challenge.id)

    def test_status_changes_are_logged_once(self, db_engine, workspace):
        challenge = make_challenge(db_engine, workspace.id, status=ChallengeStatus.DRAFT.value)

        challenge_service.set_challenge_status(db_engine, workspace.id, challenge.id, "PUBLISHED")
        challenge_service.set_challenge_status(db_engine, workspace.id, challenge.id, "PUBLISHED")
        archived = challenge_service.set_challenge_status(
            db_engine, workspace.id, challenge.id, "ARCHIVED"
        )

        assert archived.status == ChallengeStatus.ARCHIVED
        assert sorted(_event_types(db_engine, challenge.id)) == [
            "CHALLENGE_ARCHIVED", "CHALLENGE_PUBLISHED",
        ]

    def test_invalid_status(self, db_engine, workspace):
        challenge = make_challenge(db_engine, workspace.id)
        with pytest.raises(ValidationError):
            challenge_service.set_challenge_status(db_engine, workspace.id, challenge.id, "LIVE")

    def test_list_pairs_user_enrollment(self, db_engine, workspace, member):
        first = make_challenge(db_engine, workspace.id, title="First")
        make_challenge(db_engine, workspace.id, title="Second")
        enrollment_service.create_enrollment(
            db_engine, workspace.id, user_id=member.id, challenge_id=first.id
        )

        rows = challenge_service.list_challenges(db_engine, workspace.id, user_id=member.id)
        by_title = {c.title: e for c, e in rows}
        assert by_title["First"].status == EnrollmentStatus.ENROLLED
        assert by_title["Second"] is None

    def test_metrics_counts_enrollments(self, db_engine, workspace, member):
        challenge = make_challenge(db_engine, workspace.id)
        invitee = make_user(db_engine, "inv@example.com")
        add_member(db_engine, invitee.id, workspace.id)
        enrollment_service.create_enrollment(
            db_engine, workspace.id, user_id=member.id, challenge_id=challenge.id
        )
        enrollment_service.create_enrollment(
            db_engine, workspace.id, user_id=invitee.id, challenge_id=challenge.id,
            status="INVITED",
        )

        metrics, leaderboard = challenge_service.get_challenge_metrics(
            db_engine, workspace.id, challenge.id
        )
        assert (metrics.invited_count, metrics.enrolled_count) == (1, 1)
        assert metrics.any_submissions is False
        assert leaderboard == []


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------
class TestEnrollment:
    def test_transition_table(self):
        assert enrollment_service.check_transition("INVITED", "ENROLLED") is EnrollmentStatus.ENROLLED
        assert enrollment_service.check_transition("WITHDRAWN", "ENROLLED") is EnrollmentStatus.ENROLLED
        for current, target in [("INVITED", "COMPLETED"), ("COMPLETED", "ENROLLED"),
                                ("WITHDRAWN", "COMPLETED")]:
            with pytest.raises(ValidationError, match="Cannot change enrollment"):
                enrollment_service.check_transition(current, target)
        with pytest.raises(ValidationError, match="Invalid enrollment status"):
            enrollment_service.check_transition("INVITED", "MAYBE")

    def test_non_member_cannot_enroll(self, db_engine, workspace):
        challenge = make_challenge(db_engine, workspace.id)
        outsider = make_user(db_engine, "out@example.com")
        with pytest.raises(WorkspaceAccessError):
            enrollment_service.create_enrollment(
                db_engine, workspace.id, user_id=outsider.id, challenge_id=challenge.id
            )

    def test_duplicate_enrollment_conflicts(self, db_engine, workspace, member):
        challenge = make_challenge(db_engine, workspace.id)
        enrollment_service.create_enrollment(
            db_engine, workspace.id, user_id=member.id, challenge_id=challenge.id
        )
        with pytest.raises(ConflictError):
            enrollment_service.create_enrollment(
                db_engine, workspace.id, user_id=member.id, challenge_id=challenge.id
            )

    def test_archived_challenge_rejects(self, db_engine, workspace, member):
        challenge = make_challenge(db_engine, workspace.id, status=ChallengeStatus.ARCHIVED.value)
        with pytest.raises(ValidationError, match="archived"):
            enrollment_service.create_enrollment(
                db_engine, workspace.id, user_id=member.id, challenge_id=challenge.id
            )

    def test_passed_deadline_rejects(self, db_engine, workspace, member):
        challenge = make_challenge(
            db_engine, workspace.id,
            start_date=NOW - timedelta(days=3),
            enrollment_deadline=NOW - timedelta(days=2),
        )
        with pytest.raises(ValidationError, match="deadline has passed"):
            enrollment_service.create_enrollment(
                db_engine, workspace.id, user_id=member.id, challenge_id=challenge.id
            )

    def test_bulk_enrollment_skips_existing(self, db_engine, workspace, member):
        challenge = make_challenge(db_engine, workspace.id)
        other = make_user(db_engine, "sam@example.com")
        add_member(db_engine, other.id, workspace.id)
        enrollment_service.create_enrollment(
            db_engine, workspace.id, user_id=member.id, challenge_id=challenge.id
        )

        created = enrollment_service.create_challenge_enrollments(
            db_engine, workspace.id, challenge.id, [member.id, other.id, other.id]
        )
        assert [e.user_id for e in created] == [other.id]
        assert created[0].status == EnrollmentStatus.INVITED

    def test_withdraw_and_rejoin(self, db_engine, workspace, member):
        challenge = make_challenge(db_engine, workspace.id)
        enrollment = enrollment_service.create_enrollment(
            db_engine, workspace.id, user_id=member.id, challenge_id=challenge.id
        )
        withdrawn = enrollment_service.withdraw(db_engine, workspace.id, enrollment.id)
        assert withdrawn.status == EnrollmentStatus.WITHDRAWN

        rejoined, issuance_id = enrollment_service.update_enrollment_status(
            db_engine, workspace.id, enrollment.id, "ENROLLED"
        )
        assert rejoined.status == EnrollmentStatus.ENROLLED
        assert issuance_id is None

    def test_completion_without_rewardstack_queues_nothing(self, db_engine, workspace, member):
        challenge = make_challenge(
            db_engine, workspace.id, reward_type="points", reward_config={"amount": 25}
        )
        enrollment = enrollment_service.create_enrollment(
            db_engine, workspace.id, user_id=member.id, challenge_id=challenge.id
        )
        completed, issuance_id = enrollment_service.update_enrollment_status(
            db_engine, workspace.id, enrollment.id, "COMPLETED"
        )
        assert completed.completed_at is not None
        assert issuance_id is None

    def test_completion_queues_reward_once(self, db_engine):
        ws = make_workspace(db_engine, "rs", reward_stack_enabled=True, program_id="PROG")
        user = make_user(db_engine, "pat@example.com")
        add_member(db_engine, user.id, ws.id)
        challenge = make_challenge(
            db_engine, ws.id, reward_type="points", reward_config={"amount": 25}
        )
        enrollment = enrollment_service.create_enrollment(
            db_engine, ws.id, user_id=user.id, challenge_id=challenge.id
        )

        _, issuance_id = enrollment_service.update_enrollment_status(
            db_engine, ws.id, enrollment.id, "COMPLETED"
        )

        assert issuance_id is not None
        with Session(db_engine) as s:
            issuance = s.get(RewardIssuance, issuance_id)
            assert (issuance.type, issuance.amount, issuance.status) == ("points", 25, "PENDING")
            assert issuance.metadata_["triggerType"] == "challenge_completion"

    def test_delete_enrollment(self, db_engine, workspace, member):
        challenge = make_challenge(db_engine, workspace.id)
        enrollment = enrollment_service.create_enrollment(
            db_engine, workspace.id, user_id=member.id, challenge_id=challenge.id
        )
        enrollment_service.delete_enrollment(db_engine, workspace.id, enrollment.id)
        with pytest.raises(ResourceNotFoundError):
            enrollment_service.get_enrollment(db_engine, workspace.id, enrollment.id)

    def test_user_enrollments_include_challenge(self, db_engine, workspace, member):
        challenge = make_challenge(db_engine, workspace.id, title="Bike Week")
        enrollment_service.create_enrollment(
            db_engine, workspace.id, user_id=member.id, challenge_id=challenge.id
        )
        rows = enrollment_service.list_user_enrollments(db_engine, workspace.id, member.id)
        assert [e.challenge.title for e in rows] == ["Bike Week"]
