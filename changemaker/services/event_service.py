"""
changemaker.services.event_service — Activity Event Trail
==========================================================

``activity_events`` is an append-only audit log (enrollments, reviews,
challenge edits, invites).  Writes come in two flavours:

* :func:`log_event` adds a row inside the caller's session so it commits
  atomically with the change it describes.
* :func:`record_event` opens its own session and never raises; use it
  for follow-up bookkeeping that must not fail the main operation.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from changemaker.database.models import ActivityEvent, ActivityEventType

logger = logging.getLogger(__name__)


def log_event(
    session: Session,
    *,
    workspace_id: str,
    type: ActivityEventType,
    challenge_id: str | None = None,
    enrollment_id: str | None = None,
    user_id: str | None = None,
    actor_user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> ActivityEvent:
    event = ActivityEvent(
        workspace_id=workspace_id,
        type=type.value,
        challenge_id=challenge_id,
        enrollment_id=enrollment_id,
        user_id=user_id,
        actor_user_id=actor_user_id,
        metadata_=metadata,
    )
    session.add(event)
    return event


def record_event(engine: Engine, **kwargs: Any) -> None:
    """Best-effort :func:`log_event` in a separate transaction."""
    try:
        with Session(engine) as session:
            log_event(session, **kwargs)
            session.commit()
    except SQLAlchemyError:
        logger.warning("Failed to record activity event %s", kwargs.get("type"), exc_info=True)


def list_events(
    engine: Engine,
    workspace_id: str,
    *,
    challenge_id: str | None = None,
    limit: int = 50,
) -> list[ActivityEvent]:
    """Most recent events first."""
    with Session(engine) as session:
        query = (
            select(ActivityEvent)
            .where(ActivityEvent.workspace_id == workspace_id)
            .order_by(ActivityEvent.created_at.desc())
            .limit(limit)
        )
        if challenge_id:
            query = query.where(ActivityEvent.challenge_id == challenge_id)
        rows = list(session.scalars(query).all())
        for row in rows:
            session.expunge(row)
        return rows
