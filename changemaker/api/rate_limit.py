"""
changemaker.api.rate_limit — Sliding-Window Request Throttling
===============================================================

A DB-backed sliding-window counter keyed by an arbitrary string.  The bulk
participant invite endpoint uses it with the key
``participants-bulk:{workspace_id}:{user_id}`` (50 requests / 60 s by
default, see ``bulk_invite_limit`` in ``config.yaml``).

Exceeding the limit raises :class:`RateLimitError`, rendered as HTTP 429
with a ``Retry-After`` header.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import Depends
from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from changemaker.api.deps import WorkspaceContext, require_workspace_admin
from changemaker.database.models import RateLimitEvent
from changemaker.errors import RateLimitError

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = 50
DEFAULT_WINDOW_SECONDS = 60


class RateLimiter:
    """Sliding-window rate limiter backed by ``rate_limit_events``."""

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        *,
        engine: Engine,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.engine = engine

    def _normalize_dt(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def _prune(self, session: Session, key: str, cutoff: datetime) -> None:
        session.execute(
            delete(RateLimitEvent).where(
                RateLimitEvent.key == key,
                RateLimitEvent.timestamp < cutoff,
            )
        )

    def check(self, key: str) -> tuple[bool, dict[str, Any]]:
        """Check whether *key* is within its limit.

        Returns (allowed, info) where info contains:
          - remaining: requests remaining in the window
          - reset: seconds until the oldest request expires
          - limit: the max requests per window
        """
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.window_seconds)

        with Session(self.engine) as session:
            self._prune(session, key, cutoff)
            timestamps = session.scalars(
                select(RateLimitEvent.timestamp)
                .where(RateLimitEvent.key == key)
                .order_by(RateLimitEvent.timestamp.asc())
            ).all()
            session.commit()

        count = len(timestamps)
        if count >= self.max_requests:
            oldest = self._normalize_dt(timestamps[0])
            reset = (oldest + timedelta(seconds=self.window_seconds) - now).total_seconds()
            return False, {
                "remaining": 0,
                "reset": max(1, int(reset) + 1),
                "limit": self.max_requests,
            }

        return True, {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def record(self, key: str) -> dict[str, Any]:
        """Record a request and return the updated rate-limit info."""
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.window_seconds)

        with Session(self.engine) as session:
            self._prune(session, key, cutoff)
            session.add(RateLimitEvent(key=key, timestamp=now))
            session.flush()
            count = session.scalar(
                select(func.count()).select_from(RateLimitEvent).where(RateLimitEvent.key == key)
            ) or 0
            session.commit()

        return {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def hit(self, key: str) -> dict[str, Any]:
        """Check then record; raises :class:`RateLimitError` when over the limit."""
        allowed, info = self.check(key)
        if not allowed:
            logger.warning(
                "Rate limit exceeded for %s: %d requests per %ds",
                key, self.max_requests, self.window_seconds,
            )
            raise RateLimitError(info["reset"])
        return self.record(key)

    def reset(self, key: str | None = None) -> None:
        """Clear rate limit state. If key is None, clear all."""
        with Session(self.engine) as session:
            if key is None:
                session.execute(delete(RateLimitEvent))
            else:
                session.execute(delete(RateLimitEvent).where(RateLimitEvent.key == key))
            session.commit()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------
_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Return the global rate limiter instance."""
    if _limiter is None:
        raise RuntimeError("Rate limiter not configured — call configure_rate_limiter() first")
    return _limiter


def configure_rate_limiter(
    *,
    engine: Engine,
    max_requests: int = DEFAULT_RATE_LIMIT,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> None:
    """Configure the global limiter to use durable DB-backed storage."""
    global _limiter
    _limiter = RateLimiter(max_requests=max_requests, window_seconds=window_seconds, engine=engine)


# ---------------------------------------------------------------------------
# FastAPI dependency — chains after require_workspace_admin
# ---------------------------------------------------------------------------
async def bulk_invite_rate_limit(
    ctx: WorkspaceContext = Depends(require_workspace_admin),
) -> WorkspaceContext:
    """Admin check plus the per-workspace, per-admin bulk invite throttle."""
    limiter = get_rate_limiter()
    key = f"participants-bulk:{ctx.workspace.id}:{ctx.user.id}"
    await asyncio.to_thread(limiter.hit, key)
    return ctx
