"""
changemaker.api.routes.invites — Invite codes, bulk invites and redemption
===========================================================================

Workspace admins create codes and bulk-invite lists of people; any signed-in
user can look up and accept a code.  The bulk endpoint accepts JSON
(``[{"email", "role", "name"}]`` or ``{"items": [...]}``) or a
``text/plain`` body with one ``email[,role][,name]`` per line.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_config,
    get_current_user,
    get_engine,
    require_workspace_admin,
)
from changemaker.api.rate_limit import bulk_invite_rate_limit
from changemaker.api.serializers import challenge_dict, enrollment_dict, invite_dict
from changemaker.config import ChangemakerConfig
from changemaker.database.engine import run_db
from changemaker.database.models import Role, User
from changemaker.engine.invites import parse_json_items, parse_text_list
from changemaker.errors import ValidationError
from changemaker.services import invite_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/workspaces/{slug}", tags=["invites"])
redeem_router = APIRouter(prefix="/invites", tags=["invites"])


class InviteCreate(BaseModel):
    role: str = Role.PARTICIPANT.value
    challenge_id: str | None = None
    expires_in: int | None = None
    max_uses: int = 1
    target_email: str | None = None


class InviteAccept(BaseModel):
    code: str


# ---------------------------------------------------------------------------
# Workspace invite codes (admin)
# ---------------------------------------------------------------------------
@router.get("/invites")
def list_invites(
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    invites = invite_service.list_invites(engine, ctx.workspace.id)
    return {"invites": [invite_dict(i, invite_service.invite_state(i)) for i in invites]}


@router.post("/invites", status_code=201)
def create_invite(
    body: InviteCreate,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
):
    invite = invite_service.create_invite_code(
        engine,
        ctx.workspace.id,
        created_by=ctx.user.id,
        role=body.role,
        challenge_id=body.challenge_id,
        expires_in_hours=body.expires_in or cfg.invite_expiry_hours,
        max_uses=body.max_uses,
        target_email=body.target_email,
    )
    return {
        "invite": invite_dict(invite, "valid"),
        "url": f"{cfg.frontend_url.rstrip('/')}/invite/{invite.code}",
    }


@router.delete("/invites/{invite_id}")
def delete_invite(
    invite_id: str,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine=Depends(get_engine),
):
    invite_service.delete_invite(engine, ctx.workspace.id, invite_id)
    return {"success": True}


@router.post("/participants/bulk")
async def bulk_invite(
    request: Request,
    ctx: WorkspaceContext = Depends(bulk_invite_rate_limit),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
):
    raw = (await request.body()).decode("utf-8", errors="replace")
    if request.headers.get("content-type", "").startswith("text/plain"):
        items = parse_text_list(raw)
    else:
        try:
            items = parse_json_items(json.loads(raw or "null"))
        except json.JSONDecodeError as exc:
            raise ValidationError("Request body must be JSON or text/plain") from exc

    report = await run_db(
        invite_service.bulk_invite,
        engine,
        ctx.workspace.id,
        items,
        inviter_id=ctx.user.id,
        base_url=cfg.frontend_url,
        expires_in_hours=cfg.invite_expiry_hours,
    )
    return {
        "results": [
            {
                "email": r.email,
                "role": r.role,
                "status": r.status,
                "message": r.message,
                "invite_code": r.invite_code,
            }
            for r in report.results
        ],
        "summary": report.summary,
    }


# ---------------------------------------------------------------------------
# Redemption (any signed-in user)
# ---------------------------------------------------------------------------
@redeem_router.get("/{code}")
def get_invite(code: str, engine=Depends(get_engine)):
    invite = invite_service.get_invite(engine, code)
    return {
        "invite": {
            "code": invite.code,
            "role": invite.role,
            "state": invite_service.invite_state(invite),
            "expires_at": invite.expires_at.isoformat(),
            "workspace": {"slug": invite.workspace.slug, "name": invite.workspace.name},
            "challenge": (
                {"id": invite.challenge.id, "title": invite.challenge.title}
                if invite.challenge else None
            ),
        }
    }


@redeem_router.post("/accept")
def accept_invite(
    body: InviteAccept,
    user: User = Depends(get_current_user),
    engine=Depends(get_engine),
):
    accepted = invite_service.accept_invite(engine, body.code.strip(), user.id)
    return {
        "success": True,
        "workspace": {"id": accepted.workspace.id, "slug": accepted.workspace.slug,
                      "name": accepted.workspace.name},
        "role": accepted.role,
        "is_existing_member": accepted.is_existing_member,
        "challenge": challenge_dict(accepted.challenge) if accepted.challenge else None,
        "enrollment": enrollment_dict(accepted.enrollment) if accepted.enrollment else None,
    }
