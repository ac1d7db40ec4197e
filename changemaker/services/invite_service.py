"""
changemaker.services.invite_service — Invite Codes & Bulk Invites
==================================================================

An invite code grants a role in a workspace (and optionally enrollment in
one challenge).  Codes expire, carry a use limit and may be bound to a
single e-mail address.  Redemption is idempotent per user: accepting the
same code twice counts once.

Bulk invites create a pending user plus membership for each address and a
single-use code bound to it.  Delivery goes through an ``InviteNotifier``
callable; failures there are logged and do not fail the invite.
"""

from __future__ import annotations

import base64
import logging
import secrets
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from changemaker.database.models import (
    ActivityEventType,
    Challenge,
    Enrollment,
    EnrollmentStatus,
    InviteCode,
    InviteRedemption,
    Role,
    User,
    Workspace,
    WorkspaceMembership,
)
from changemaker.engine.invites import InviteItem, is_valid_email, normalize_items
from changemaker.errors import (
    ResourceNotFoundError,
    ValidationError,
    WorkspaceAccessError,
)
from changemaker.services.event_service import log_event, record_event

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_HOURS = 168
CODE_LENGTH = 10

InviteNotifier = Callable[[InviteCode, str, str], None]


def generate_code() -> str:
    """10 URL-safe characters (base64url of random bytes)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(8)).decode("ascii")[:CODE_LENGTH]


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _role(value: str | None) -> str:
    role = (value or Role.PARTICIPANT.value).strip().upper()
    if role not in {r.value for r in Role}:
        raise ValidationError(f"Invalid role: {value}")
    return role


# ---------------------------------------------------------------------------
# Codes
# ---------------------------------------------------------------------------
def add_invite_code(
    session: Session,
    *,
    workspace_id: str,
    created_by: str,
    role: str = Role.PARTICIPANT.value,
    challenge_id: str | None = None,
    expires_in_hours: int = DEFAULT_EXPIRY_HOURS,
    max_uses: int = 1,
    target_email: str | None = None,
) -> InviteCode:
    """Add an invite code to the caller's session after checking the creator."""
    if max_uses < 1:
        raise ValidationError("max_uses must be at least 1")
    if expires_in_hours <= 0:
        raise ValidationError("expiresIn must be positive")
    creator_role = session.scalar(
        select(WorkspaceMembership.role).where(
            WorkspaceMembership.user_id == created_by,
            WorkspaceMembership.workspace_id == workspace_id,
        )
    )
    if creator_role != Role.ADMIN:
        raise WorkspaceAccessError("Only workspace admins can create invite codes")
    if challenge_id:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)

    invite = InviteCode(
        code=generate_code(),
        workspace_id=workspace_id,
        challenge_id=challenge_id,
        role=_role(role),
        expires_at=datetime.now(UTC) + timedelta(hours=expires_in_hours),
        max_uses=max_uses,
        used_count=0,
        target_email=target_email.strip().lower() if target_email else None,
        created_by=created_by,
    )
    session.add(invite)
    session.flush()
    return invite


def create_invite_code(engine: Engine, workspace_id: str, **params) -> InviteCode:
    with Session(engine, expire_on_commit=False) as session:
        invite = add_invite_code(session, workspace_id=workspace_id, **params)
        log_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.INVITE_SENT,
            challenge_id=invite.challenge_id,
            actor_user_id=invite.created_by,
            metadata={"inviteCode": invite.code, "role": invite.role},
        )
        session.commit()
        session.refresh(invite)
        session.expunge(invite)
    logger.info("Invite %s created for workspace %s", invite.code, workspace_id)
    return invite


def get_invite(engine: Engine, code: str) -> InviteCode:
    """Look up a code with ``.workspace`` and ``.challenge`` loaded."""
    with Session(engine) as session:
        invite = session.scalar(select(InviteCode).where(InviteCode.code == code))
        if invite is None:
            raise ResourceNotFoundError("Invite", code)
        _ = invite.workspace, invite.challenge
        session.expunge_all()
        return invite


def invite_state(invite: InviteCode, now: datetime | None = None) -> str:
    """``valid``, ``expired`` or ``exhausted``."""
    now = now or datetime.now(UTC)
    if _aware(invite.expires_at) < now:
        return "expired"
    if invite.used_count >= invite.max_uses:
        return "exhausted"
    return "valid"


def list_invites(engine: Engine, workspace_id: str) -> list[InviteCode]:
    with Session(engine) as session:
        rows = list(session.scalars(
            select(InviteCode)
            .where(InviteCode.workspace_id == workspace_id)
            .order_by(InviteCode.created_at.desc())
        ).all())
        session.expunge_all()
        return rows


def delete_invite(engine: Engine, workspace_id: str, invite_id: str) -> None:
    with Session(engine) as session:
        invite = session.get(InviteCode, invite_id)
        if invite is None or invite.workspace_id != workspace_id:
            raise ResourceNotFoundError("Invite", invite_id)
        session.delete(invite)
        session.commit()


# ---------------------------------------------------------------------------
# Redemption
# ---------------------------------------------------------------------------
@dataclass
class AcceptedInvite:
    workspace: Workspace
    challenge: Challenge | None
    enrollment: Enrollment | None
    role: str
    is_existing_member: bool


def accept_invite(engine: Engine, code: str, user_id: str) -> AcceptedInvite:
    """Redeem *code* for *user_id*.

    Raises
    ------
    ResourceNotFoundError
        Unknown code or user.
    ValidationError
        Expired, fully used, or bound to a different e-mail address.
    """
    now = datetime.now(UTC)
    with Session(engine, expire_on_commit=False) as session:
        invite = session.scalar(select(InviteCode).where(InviteCode.code == code))
        if invite is None:
            raise ResourceNotFoundError("Invite", code)
        user = session.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError("User", user_id)

        already_redeemed = session.get(InviteRedemption, (invite.id, user_id)) is not None
        if _aware(invite.expires_at) < now:
            raise ValidationError("Invite code has expired")
        if not already_redeemed and invite.used_count >= invite.max_uses:
            raise ValidationError("Invite code has reached its usage limit")
        if invite.target_email and invite.target_email != user.email.lower():
            raise ValidationError("This invite was sent to a different email address")

        membership = session.scalar(
            select(WorkspaceMembership).where(
                WorkspaceMembership.user_id == user_id,
                WorkspaceMembership.workspace_id == invite.workspace_id,
            )
        )
        is_existing_member = membership is not None
        if membership is None:
            membership = WorkspaceMembership(
                user_id=user_id,
                workspace_id=invite.workspace_id,
                role=invite.role,
                is_primary=False,
            )
            session.add(membership)
        user.is_pending = False

        enrollment = None
        if invite.challenge_id:
            enrollment = session.scalar(
                select(Enrollment).where(
                    Enrollment.user_id == user_id, Enrollment.challenge_id == invite.challenge_id
                )
            )
            if enrollment is None:
                enrollment = Enrollment(
                    user_id=user_id,
                    challenge_id=invite.challenge_id,
                    status=EnrollmentStatus.ENROLLED.value,
                )
                session.add(enrollment)
            elif enrollment.status != EnrollmentStatus.ENROLLED:
                enrollment.status = EnrollmentStatus.ENROLLED.value

        if not already_redeemed:
            session.add(InviteRedemption(invite_id=invite.id, user_id=user_id))
            invite.used_count += 1
        session.flush()

        log_event(
            session,
            workspace_id=invite.workspace_id,
            type=ActivityEventType.INVITE_REDEEMED,
            challenge_id=invite.challenge_id,
            enrollment_id=enrollment.id if enrollment else None,
            user_id=user_id,
            actor_user_id=user_id,
            metadata={"inviteCode": invite.code, "role": membership.role},
        )
        session.commit()

        workspace = session.get(Workspace, invite.workspace_id)
        challenge = session.get(Challenge, invite.challenge_id) if invite.challenge_id else None
        result = AcceptedInvite(
            workspace=workspace,
            challenge=challenge,
            enrollment=enrollment,
            role=membership.role,
            is_existing_member=is_existing_member,
        )
        session.expunge_all()

    logger.info("User %s redeemed invite %s", user_id, code)
    return result


# ---------------------------------------------------------------------------
# Bulk invites
# ---------------------------------------------------------------------------
@dataclass
class BulkInviteResult:
    email: str
    role: str
    status: str
    message: str | None = None
    invite_code: str | None = None


@dataclass
class BulkInviteReport:
    results: list[BulkInviteResult] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "invited": sum(r.status == "invited" for r in self.results),
            "skipped": sum(r.status == "skipped" for r in self.results),
            "errors": sum(r.status == "error" for r in self.results),
            "total": len(self.results),
        }


def log_invite_notifier(invite: InviteCode, email: str, invite_url: str) -> None:
    logger.info("Invite for %s: %s (expires %s)", email, invite_url, invite.expires_at)


def bulk_invite(
    engine: Engine,
    workspace_id: str,
    items: Iterable[InviteItem],
    *,
    inviter_id: str,
    base_url: str,
    expires_in_hours: int = DEFAULT_EXPIRY_HOURS,
    notify: InviteNotifier = log_invite_notifier,
) -> BulkInviteReport:
    """Invite each address, one transaction per item.

    Raises :class:`ValidationError` if no usable item remains after
    normalisation.
    """
    normalized = normalize_items(list(items))
    if not normalized:
        raise ValidationError("No valid items provided")

    report = BulkInviteReport()
    for item in normalized:
        if not is_valid_email(item.email):
            report.results.append(
                BulkInviteResult(item.email, item.role, "skipped", message="invalid_email")
            )
            continue

        try:
            with Session(engine, expire_on_commit=False) as session:
                user = session.scalar(select(User).where(User.email == item.email))
                if user is None:
                    first, _, last = (item.name or "").partition(" ")
                    user = User(
                        email=item.email,
                        first_name=first or None,
                        last_name=last or None,
                        is_pending=True,
                        preferences={},
                    )
                    session.add(user)
                    session.flush()
                membership = session.scalar(
                    select(WorkspaceMembership.id).where(
                        WorkspaceMembership.user_id == user.id,
                        WorkspaceMembership.workspace_id == workspace_id,
                    )
                )
                if membership is None:
                    session.add(WorkspaceMembership(
                        user_id=user.id,
                        workspace_id=workspace_id,
                        role=item.role,
                        is_primary=False,
                    ))
                invite = add_invite_code(
                    session,
                    workspace_id=workspace_id,
                    created_by=inviter_id,
                    role=item.role,
                    max_uses=1,
                    target_email=item.email,
                    expires_in_hours=expires_in_hours,
                )
                session.commit()
                session.expunge(invite)
        except SQLAlchemyError:
            logger.exception("Bulk invite failed for %s", item.email)
            report.results.append(
                BulkInviteResult(item.email, item.role, "error", message="db_error")
            )
            continue

        try:
            notify(invite, item.email, f"{base_url.rstrip('/')}/invite/{invite.code}")
            record_event(
                engine,
                workspace_id=workspace_id,
                type=ActivityEventType.INVITE_SENT,
                actor_user_id=inviter_id,
                metadata={
                    "inviteCode": invite.code,
                    "recipients": [item.email],
                    "via": "email",
                    "bulk": True,
                },
            )
        except Exception:
            logger.exception("Invite delivery failed for %s", item.email)

        report.results.append(
            BulkInviteResult(item.email, item.role, "invited", invite_code=invite.code)
        )

    logger.info("Bulk invite for %s: %s", workspace_id, report.summary)
    return report
