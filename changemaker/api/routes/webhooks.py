"""
changemaker.api.routes.webhooks — Inbound RewardSTACK webhooks
===============================================================

Unauthenticated; the workspace is named by ``?workspace_id=`` and, when it
has a webhook secret, the body must be signed.  See
:mod:`changemaker.rewardstack.webhooks` for the event handling.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Query, Request

from changemaker.api.deps import get_engine
from changemaker.database.engine import run_db
from changemaker.rewardstack.webhooks import (
    handle_event,
    load_webhook_workspace,
    parse_event,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/rewardstack")
async def rewardstack_webhook(
    request: Request,
    workspace_id: str | None = Query(None),
    x_rewardstack_signature: str | None = Header(None),
    engine=Depends(get_engine),
):
    workspace = await run_db(load_webhook_workspace, engine, workspace_id)
    payload = await request.body()
    event = parse_event(payload, x_rewardstack_signature, workspace)
    logger.info("RewardSTACK webhook %s (%s) for %s", event.get("id"), event["type"], workspace.slug)
    await run_db(handle_event, engine, workspace.id, event)
    return {"received": True, "event_id": event.get("id")}
