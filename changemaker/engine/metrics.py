"""
changemaker.engine.metrics — Challenge Analytics & Leaderboards
================================================================

Pure aggregation over enrollment / submission snapshots.
No DB I/O inside the engine; services load rows, convert them into the
snapshot dataclasses below and call these functions.

Rankings use Python's stable sort, so users with equal scores keep the
order in which they were supplied (database order).
"""

from __future__ import annotations

import calendar
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from changemaker.database.models import EnrollmentStatus, SubmissionStatus

STALLED_INVITE_AFTER = timedelta(days=7)

PERIODS = ("day", "week", "month", "all")


def _round(value: float) -> int:
    """Round half up (0.5 → 1), matching how scores are shown to users."""
    return int(math.floor(value + 0.5))


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Snapshots — plain inputs
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class EnrollmentSnapshot:
    user_id: str
    status: str
    created_at: datetime


@dataclass(frozen=True)
class SubmissionSnapshot:
    id: str
    user_id: str
    status: str
    points_awarded: int | None
    submitted_at: datetime
    email: str = ""
    display_name: str | None = None


@dataclass(frozen=True)
class ActivitySnapshot:
    id: str
    points_value: int | None
    submissions: Sequence[SubmissionSnapshot] = field(default_factory=tuple)


@dataclass(frozen=True)
class ParticipantStanding:
    """One enrolled user and the submissions they made in a challenge."""

    user_id: str
    email: str
    display_name: str | None
    submissions: Sequence[tuple[str, SubmissionSnapshot]] = field(default_factory=tuple)
    """``(activity_id, submission)`` pairs."""


@dataclass(frozen=True)
class ActivityEventSnapshot:
    user_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    is_pending: bool = False


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
@dataclass
class ChallengeMetrics:
    invited_count: int = 0
    enrolled_count: int = 0
    total_submissions: int = 0
    approved_submissions: int = 0
    completion_pct: int = 0
    avg_score: int = 0
    last_activity_at: datetime | None = None
    any_submissions: bool = False
    pending_submission_count: int = 0
    stalled_invites_count: int = 0


@dataclass
class LeaderboardEntry:
    user_id: str
    email: str
    display_name: str | None
    points: int = 0


@dataclass
class ChallengeRanking:
    user_id: str
    email: str
    display_name: str | None
    total_points: int = 0
    submission_count: int = 0
    completed_activities: int = 0


@dataclass
class ActivityCountEntry:
    user_id: str
    name: str
    email: str
    activity_count: int = 0
    avatar_url: str | None = None


@dataclass
class ActivityCountStats:
    top_count: int = 0
    average_count: int = 0
    participant_count: int = 0
    hidden_count: int = 0


# ---------------------------------------------------------------------------
# Challenge metrics
# ---------------------------------------------------------------------------
def calculate_challenge_metrics(
    enrollments: Iterable[EnrollmentSnapshot],
    activities: Iterable[ActivitySnapshot],
    *,
    stalled_after: timedelta = STALLED_INVITE_AFTER,
    now: datetime | None = None,
) -> ChallengeMetrics:
    """Aggregate enrollment and submission counts for one challenge.

    ``completion_pct`` is approved submissions per enrolled user, as a
    percentage; it can exceed 100 when activities allow several
    submissions.
    """
    now = now or datetime.now(UTC)
    enrollments = list(enrollments)
    submissions = [s for a in activities for s in a.submissions]

    invited = [e for e in enrollments if e.status == EnrollmentStatus.INVITED]
    enrolled_count = sum(1 for e in enrollments if e.status == EnrollmentStatus.ENROLLED)
    approved = [s for s in submissions if s.status == SubmissionStatus.APPROVED]
    pending_count = sum(1 for s in submissions if s.status == SubmissionStatus.PENDING)

    completion_pct = 0
    if enrolled_count > 0:
        completion_pct = _round(len(approved) / max(enrolled_count, 1) * 100)

    avg_score = 0
    if approved:
        avg_score = _round(sum(s.points_awarded or 0 for s in approved) / len(approved))

    last_activity_at = None
    if submissions:
        last_activity_at = max(s.submitted_at for s in submissions)

    stalled = sum(
        1 for e in invited if now - _aware(e.created_at) > stalled_after
    )

    return ChallengeMetrics(
        invited_count=len(invited),
        enrolled_count=enrolled_count,
        total_submissions=len(submissions),
        approved_submissions=len(approved),
        completion_pct=completion_pct,
        avg_score=avg_score,
        last_activity_at=last_activity_at,
        any_submissions=bool(submissions),
        pending_submission_count=pending_count,
        stalled_invites_count=stalled,
    )


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------
def calculate_leaderboard(
    activities: Iterable[ActivitySnapshot], limit: int = 5
) -> list[LeaderboardEntry]:
    """Top users by approved-submission points.

    A submission without ``points_awarded`` is worth its activity's
    ``points_value``.
    """
    by_user: dict[str, LeaderboardEntry] = {}
    for activity in activities:
        for sub in activity.submissions:
            if sub.status != SubmissionStatus.APPROVED:
                continue
            entry = by_user.get(sub.user_id)
            if entry is None:
                entry = by_user[sub.user_id] = LeaderboardEntry(
                    user_id=sub.user_id, email=sub.email, display_name=sub.display_name
                )
            entry.points += sub.points_awarded or activity.points_value or 0

    ranked = sorted(by_user.values(), key=lambda e: e.points, reverse=True)
    return ranked[:limit]


def rank_challenge_participants(
    standings: Iterable[ParticipantStanding], limit: int = 10
) -> list[ChallengeRanking]:
    """Rank enrolled users by approved points, then completed activities."""
    rows: list[ChallengeRanking] = []
    for standing in standings:
        approved = [
            (activity_id, s) for activity_id, s in standing.submissions
            if s.status == SubmissionStatus.APPROVED
        ]
        rows.append(ChallengeRanking(
            user_id=standing.user_id,
            email=standing.email,
            display_name=standing.display_name,
            total_points=sum(s.points_awarded or 0 for _, s in approved),
            submission_count=len(standing.submissions),
            completed_activities=len({activity_id for activity_id, _ in approved}),
        ))

    rows.sort(key=lambda r: (r.total_points, r.completed_activities), reverse=True)
    return rows[:limit]


def participant_name(
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    display_name: str | None = None,
) -> str:
    """Display name, else "first last", else first name, else e-mail local part."""
    if display_name:
        return display_name
    if first_name and last_name:
        return f"{first_name} {last_name}"
    if first_name:
        return first_name
    return email.split("@")[0]


def rank_by_activity_count(
    events: Iterable[ActivityEventSnapshot],
) -> tuple[list[ActivityCountEntry], ActivityCountStats]:
    """Count activity events per user; pending (not yet signed-up) users are skipped."""
    by_user: dict[str, ActivityCountEntry] = {}
    for event in events:
        if event.is_pending:
            continue
        entry = by_user.get(event.user_id)
        if entry is None:
            entry = by_user[event.user_id] = ActivityCountEntry(
                user_id=event.user_id,
                name=participant_name(
                    event.email, event.first_name, event.last_name, event.display_name
                ),
                email=event.email,
            )
        entry.activity_count += 1

    leaderboard = sorted(by_user.values(), key=lambda e: e.activity_count, reverse=True)
    counts = [e.activity_count for e in leaderboard]
    stats = ActivityCountStats(
        top_count=counts[0] if counts else 0,
        average_count=_round(sum(counts) / len(counts)) if counts else 0,
        participant_count=len(leaderboard),
        hidden_count=0,
    )
    return leaderboard, stats


def period_start(period: str | None, now: datetime | None = None) -> datetime | None:
    """Lower bound for a leaderboard period.

    ``day`` is midnight today, ``week`` is seven days ago and ``month`` is
    the same time one calendar month ago (clamped to the month's last day).
    ``all`` or anything unrecognised means no bound.
    """
    now = now or datetime.now(UTC)
    if period == "day":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
        day = min(now.day, calendar.monthrange(year, month)[1])
        return now.replace(year=year, month=month, day=day)
    return None
