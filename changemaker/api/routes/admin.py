"""
changemaker.api.routes.admin — Platform administration (superadmins only)
==========================================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from changemaker.api.deps import get_engine, require_superadmin
from changemaker.api.rate_limit import get_rate_limiter
from changemaker.database.engine import run_db
from changemaker.database.models import User
from changemaker.services import workspace_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/workspaces")
def list_workspaces(
    admin: User = Depends(require_superadmin),
    engine=Depends(get_engine),
):
    return {"workspaces": workspace_service.list_all_workspaces(engine)}


@router.delete("/rate-limits")
async def clear_rate_limits(
    key: str | None = Query(None),
    admin: User = Depends(require_superadmin),
):
    """Lift a throttle early; without *key* every window is cleared."""
    await run_db(get_rate_limiter().reset, key)
    logger.warning("Rate limits cleared by %s (key=%s)", admin.email, key or "*")
    return {"success": True, "key": key}
