"""
changemaker.rewardstack.participants — Participant Sync
========================================================

Every workspace member who can receive rewards needs a RewardSTACK
*participant* record in the workspace's program.  This module maps local
users onto that record and keeps ``users.reward_stack_*`` columns up to
date:

    NOT_SYNCED / FAILED ──sync──▶ PENDING ──ok──▶ SYNCED
                                         └─err──▶ FAILED

:func:`sync_participant` never raises; callers (profile updates, reward
issuance) treat sync as best-effort and inspect the returned result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.engine import run_db
from changemaker.database.models import (
    RewardStackSyncStatus,
    User,
    Workspace,
    WorkspaceMembership,
)
from changemaker.errors import (
    ChangemakerError,
    RewardStackError,
    RewardStackErrorCode,
)
from changemaker.rewardstack.client import RewardStackClient, build_endpoint

logger = logging.getLogger(__name__)

PARTICIPANTS_PATH = "/api/program/{programId}/participant"
PARTICIPANT_PATH = "/api/program/{programId}/participant/{uniqueId}"


@dataclass
class ParticipantSyncResult:
    success: bool
    participant_id: str | None = None
    action: str | None = None
    error: str | None = None


@dataclass
class BulkSyncSummary:
    total: int = 0
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------
_FIELD_MAP = (
    ("first_name", "firstname"),
    ("last_name", "lastname"),
    ("phone", "phone"),
    ("address_line1", "address1"),
    ("address_line2", "address2"),
    ("city", "city"),
    ("state", "state"),
    ("zip_code", "zip"),
    ("country", "country"),
)


def map_user_to_participant(user: User) -> dict[str, Any]:
    """Build the RewardSTACK participant payload; empty fields are omitted."""
    participant: dict[str, Any] = {
        "email_address": user.email,
        "external_id": user.id,
    }
    for attr, key in _FIELD_MAP:
        value = getattr(user, attr, None)
        if value:
            participant[key] = value
    return participant


def should_sync_user(
    status: str,
    last_sync: datetime | None,
    stale_minutes: int = 60,
    *,
    now: datetime | None = None,
) -> bool:
    """NOT_SYNCED and FAILED always sync; PENDING never; SYNCED when stale."""
    if status in (RewardStackSyncStatus.NOT_SYNCED, RewardStackSyncStatus.FAILED):
        return True
    if status == RewardStackSyncStatus.PENDING:
        return False
    if last_sync is None:
        return False
    if last_sync.tzinfo is None:
        last_sync = last_sync.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return now - last_sync > timedelta(minutes=stale_minutes)


# ---------------------------------------------------------------------------
# Remote operations
# ---------------------------------------------------------------------------
async def create_participant(
    client: RewardStackClient, program_id: str, participant: dict[str, Any]
) -> str:
    """Create a participant and return its RewardSTACK ``unique_id``."""
    data = await client.request(
        "POST",
        build_endpoint(PARTICIPANTS_PATH, {"programId": program_id}),
        json={**participant, "program": program_id},
    )
    unique_id = data.get("unique_id") if isinstance(data, dict) else None
    if not unique_id:
        raise RewardStackError(
            "RewardSTACK did not return a participant id",
            RewardStackErrorCode.VALIDATION_ERROR,
            response=data,
        )
    logger.info("Created RewardSTACK participant %s for %s", unique_id, participant.get("email_address"))
    return str(unique_id)


async def update_participant(
    client: RewardStackClient,
    program_id: str,
    participant_id: str,
    participant: dict[str, Any],
) -> dict[str, Any]:
    return await client.request(
        "PATCH",
        build_endpoint(PARTICIPANT_PATH, {"programId": program_id, "uniqueId": participant_id}),
        json=participant,
    )


async def get_participant(
    client: RewardStackClient, program_id: str, participant_id: str
) -> dict[str, Any]:
    return await client.request(
        "GET",
        build_endpoint(PARTICIPANT_PATH, {"programId": program_id, "uniqueId": participant_id}),
    )


async def delete_participant(
    client: RewardStackClient, program_id: str, participant_id: str
) -> None:
    """Delete a participant; one that is already gone is not an error."""
    try:
        await client.request(
            "DELETE",
            build_endpoint(PARTICIPANT_PATH, {"programId": program_id, "uniqueId": participant_id}),
        )
    except RewardStackError as exc:
        if exc.error_code is not RewardStackErrorCode.NOT_FOUND:
            raise


# ---------------------------------------------------------------------------
# DB helpers (run on a worker thread via run_db)
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class _SyncContext:
    user: User
    program_id: str
    environment: str


def _load_sync_context(engine: Engine, user_id: str, workspace_id: str) -> _SyncContext:
    with Session(engine, expire_on_commit=False) as session:
        user = session.get(User, user_id)
        if user is None:
            raise ChangemakerError(f"User not found: {user_id}")
        is_member = session.scalar(
            select(WorkspaceMembership.id).where(
                WorkspaceMembership.user_id == user_id,
                WorkspaceMembership.workspace_id == workspace_id,
            )
        )
        if is_member is None:
            raise ChangemakerError(
                f"User {user_id} is not a member of workspace {workspace_id}"
            )
        workspace = session.get(Workspace, workspace_id)
        if workspace is None or not workspace.reward_stack_enabled:
            raise ChangemakerError(f"RewardSTACK is not enabled for workspace {workspace_id}")
        if not workspace.reward_stack_program_id:
            raise ChangemakerError(
                f"RewardSTACK program ID not configured for workspace {workspace_id}"
            )
        user.reward_stack_sync_status = RewardStackSyncStatus.PENDING.value
        session.commit()
        session.refresh(user)
        session.expunge(user)
        return _SyncContext(
            user=user,
            program_id=workspace.reward_stack_program_id,
            environment=workspace.reward_stack_environment,
        )


def update_user_sync_status(
    engine: Engine,
    user_id: str,
    status: RewardStackSyncStatus,
    participant_id: str | None = None,
) -> None:
    """Persist a sync outcome; SYNCED also stamps ``reward_stack_last_sync``."""
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            return
        user.reward_stack_sync_status = status.value
        if participant_id:
            user.reward_stack_participant_id = participant_id
        if status is RewardStackSyncStatus.SYNCED:
            user.reward_stack_last_sync = datetime.now(UTC)
        session.commit()


def _workspace_member_sync_rows(engine: Engine, workspace_id: str) -> list[tuple[str, str, datetime | None]]:
    with Session(engine) as session:
        rows = session.execute(
            select(User.id, User.reward_stack_sync_status, User.reward_stack_last_sync)
            .join(WorkspaceMembership, WorkspaceMembership.user_id == User.id)
            .where(
                WorkspaceMembership.workspace_id == workspace_id,
                User.is_pending.is_(False),
            )
            .order_by(User.email)
        ).all()
        return [(r[0], r[1], r[2]) for r in rows]


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------
async def sync_participant(
    engine: Engine,
    user_id: str,
    workspace_id: str,
    *,
    client: RewardStackClient | None = None,
) -> ParticipantSyncResult:
    """Create or update the user's participant record.

    A stored participant id that RewardSTACK no longer recognises (404 or
    5xx on update) is replaced by creating a new participant.
    """
    try:
        ctx = await run_db(_load_sync_context, engine, user_id, workspace_id)
        client = client or RewardStackClient(ctx.environment)
        payload = map_user_to_participant(ctx.user)

        existing_id = ctx.user.reward_stack_participant_id
        if existing_id:
            try:
                await update_participant(client, ctx.program_id, existing_id, payload)
                participant_id, action = existing_id, "updated"
            except RewardStackError as exc:
                if exc.error_code not in (
                    RewardStackErrorCode.NOT_FOUND,
                    RewardStackErrorCode.SERVER_ERROR,
                ):
                    raise
                logger.warning(
                    "Participant %s missing in RewardSTACK for %s; recreating",
                    existing_id, ctx.user.email,
                )
                participant_id = await create_participant(client, ctx.program_id, payload)
                action = "created"
        else:
            participant_id = await create_participant(client, ctx.program_id, payload)
            action = "created"

        await run_db(
            update_user_sync_status, engine, user_id, RewardStackSyncStatus.SYNCED, participant_id
        )
        return ParticipantSyncResult(success=True, participant_id=participant_id, action=action)
    except Exception as exc:
        logger.warning("RewardSTACK sync failed for user %s: %s", user_id, exc)
        try:
            await run_db(update_user_sync_status, engine, user_id, RewardStackSyncStatus.FAILED)
        except Exception:
            logger.exception("Could not record FAILED sync status for user %s", user_id)
        return ParticipantSyncResult(success=False, error=str(exc))


async def sync_workspace_participants(
    engine: Engine,
    workspace_id: str,
    *,
    force: bool = False,
    stale_minutes: int = 60,
    client: RewardStackClient | None = None,
) -> BulkSyncSummary:
    """Sync every active member; with ``force=False`` only those that need it."""
    rows = await run_db(_workspace_member_sync_rows, engine, workspace_id)
    summary = BulkSyncSummary(total=len(rows))
    for user_id, status, last_sync in rows:
        if not force and not should_sync_user(status, last_sync, stale_minutes):
            summary.skipped += 1
            continue
        result = await sync_participant(engine, user_id, workspace_id, client=client)
        if result.success:
            summary.synced += 1
        else:
            summary.failed += 1
            summary.errors.append({"user_id": user_id, "error": result.error or "unknown"})
    logger.info(
        "Workspace %s participant sync: %d synced, %d failed, %d skipped",
        workspace_id, summary.synced, summary.failed, summary.skipped,
    )
    return summary
