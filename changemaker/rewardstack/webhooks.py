"""
changemaker.rewardstack.webhooks — Inbound RewardSTACK Events
==============================================================

RewardSTACK posts delivery updates to
``POST /api/webhooks/rewardstack?workspace_id=...``.  Each event is a JSON
object ``{"id", "type", "timestamp", "data": {"id", "status", "error", ...}}``
whose ``type`` is ``<category>.<action>``:

================  =========================================================
transaction.*     issuance found by ``reward_stack_transaction_id``
adjustment.*      issuance found by ``reward_stack_adjustment_id``
participant.*     member found by ``reward_stack_participant_id``
================  =========================================================

``created``/``updated`` move an issuance to PROCESSING; ``completed`` and
``failed`` settle it through :func:`reward_service.mark_reward_result`.
Events for unknown rows are logged and acknowledged so RewardSTACK does
not keep retrying them.

When the workspace has ``reward_stack_webhook_secret`` set, the raw body
must carry a hex HMAC-SHA256 in the ``X-RewardStack-Signature`` header.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.models import (
    RewardIssuance,
    RewardStackStatus,
    RewardStackSyncStatus,
    User,
    Workspace,
    WorkspaceMembership,
)
from changemaker.errors import AuthenticationError, ResourceNotFoundError, ValidationError
from changemaker.rewardstack.participants import update_user_sync_status
from changemaker.services import reward_service

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-rewardstack-signature"

_REWARD_KEYS = {
    "transaction": RewardIssuance.reward_stack_transaction_id,
    "adjustment": RewardIssuance.reward_stack_adjustment_id,
}


# ---------------------------------------------------------------------------
# Request checks
# ---------------------------------------------------------------------------
def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(signature.strip().lower(), sign_payload(payload, secret))


def load_webhook_workspace(engine: Engine, workspace_id: str | None) -> Workspace:
    """The target workspace; it must exist and have RewardSTACK enabled."""
    if not workspace_id:
        raise ValidationError("Missing workspace_id query parameter")
    with Session(engine) as session:
        workspace = session.get(Workspace, workspace_id)
        if workspace is None:
            raise ResourceNotFoundError("Workspace", workspace_id)
        session.expunge(workspace)
    if not workspace.reward_stack_enabled:
        raise ValidationError("RewardSTACK is not enabled for this workspace")
    return workspace


def parse_event(payload: bytes, signature: str | None, workspace: Workspace) -> dict[str, Any]:
    """Verify the signature (when a secret is configured) and decode the event."""
    secret = workspace.reward_stack_webhook_secret
    if secret and not verify_signature(payload, signature, secret):
        logger.warning("Rejected RewardSTACK webhook for %s: bad signature", workspace.slug)
        raise AuthenticationError("Invalid webhook signature")
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise ValidationError("Invalid JSON payload") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise ValidationError("Webhook event must have a type")
    if not isinstance(event.get("data"), dict) or not event["data"].get("id"):
        raise ValidationError("Webhook event must have data.id")
    return event


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------
def _find_issuance(engine: Engine, workspace_id: str, category: str, external_id: str):
    column = _REWARD_KEYS[category]
    with Session(engine) as session:
        issuance = session.scalar(
            select(RewardIssuance).where(
                RewardIssuance.workspace_id == workspace_id, column == external_id
            )
        )
        if issuance is not None:
            session.expunge(issuance)
        return issuance


def _apply_reward_event(
    engine: Engine, workspace_id: str, category: str, action: str, data: dict[str, Any]
) -> str | None:
    issuance = _find_issuance(engine, workspace_id, category, str(data["id"]))
    if issuance is None:
        logger.warning(
            "No reward found for %s %s in workspace %s", category, data["id"], workspace_id
        )
        return None

    if action == "updated":
        reported = str(data.get("status") or "").upper()
        if reported in (RewardStackStatus.COMPLETED, RewardStackStatus.FAILED):
            action = reported.lower()

    if action == "completed":
        reward_service.mark_reward_result(engine, issuance.id, success=True)
    elif action == "failed":
        error = data.get("error")
        reward_service.mark_reward_result(
            engine, issuance.id, success=False, error=str(error) if error else None
        )
    elif action in ("created", "updated"):
        if issuance.reward_stack_status == RewardStackStatus.COMPLETED:
            logger.info("Ignoring late %s.%s for settled reward %s", category, action, issuance.id)
            return issuance.id
        reward_service.mark_reward_processing(engine, issuance.id)
    else:
        logger.warning("Unknown %s event action: %s", category, action)
        return None

    logger.info("Reward %s updated from %s.%s", issuance.id, category, action)
    return issuance.id


def _apply_participant_event(
    engine: Engine, workspace_id: str, action: str, data: dict[str, Any]
) -> str | None:
    participant_id = str(data["id"])
    with Session(engine) as session:
        user_id = session.scalar(
            select(User.id)
            .join(WorkspaceMembership, WorkspaceMembership.user_id == User.id)
            .where(
                WorkspaceMembership.workspace_id == workspace_id,
                User.reward_stack_participant_id == participant_id,
            )
        )
        if user_id is None:
            logger.warning(
                "No member found for participant %s in workspace %s", participant_id, workspace_id
            )
            return None

        if action == "deleted":
            user = session.get(User, user_id)
            user.reward_stack_participant_id = None
            user.reward_stack_sync_status = RewardStackSyncStatus.NOT_SYNCED.value
            session.commit()
            logger.info("Participant %s deleted in RewardSTACK; cleared user %s", participant_id, user_id)
            return user_id

    if action in ("created", "updated"):
        update_user_sync_status(engine, user_id, RewardStackSyncStatus.SYNCED)
        return user_id
    logger.warning("Unknown participant event action: %s", action)
    return None


def handle_event(engine: Engine, workspace_id: str, event: dict[str, Any]) -> str | None:
    """Apply one event; returns the id of the issuance or user it touched."""
    category, _, action = event["type"].partition(".")
    data = event["data"]
    if category in _REWARD_KEYS:
        return _apply_reward_event(engine, workspace_id, category, action, data)
    if category == "participant":
        return _apply_participant_event(engine, workspace_id, action, data)
    logger.warning("Unhandled RewardSTACK webhook event type: %s", event["type"])
    return None
