"""
changemaker.database.engine — Database Connection & Async Helper
=================================================================

Services are plain synchronous SQLAlchemy: each takes an :class:`Engine`
and opens its own short-lived ``Session``.  Route handlers that only touch
the database are ``def`` handlers and FastAPI runs them in its threadpool.

Handlers that also await RewardSTACK are ``async``; they must not block the
event loop on a query, so they go through :func:`run_db`::

    enrollment, queued = await run_db(
        enrollment_service.update_enrollment_status, engine, ws_id, eid, "COMPLETED"
    )
    if queued:
        await issue_reward_transaction(engine, queued)

Usage::

    from changemaker.database.engine import create_db_engine, init_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # dev / demo only; prod uses Alembic
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url

from changemaker.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_POOL_SIZE = 5
DEFAULT_MAX_OVERFLOW = 10


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build the engine for *url* (default ``DATABASE_URL``).

    PostgreSQL gets a bounded pool (``DB_POOL_SIZE`` / ``DB_MAX_OVERFLOW``,
    5 + 10 by default) with pre-ping and hourly recycling, sized for a few
    uvicorn workers sharing one Supabase Postgres.  A ``sqlite://`` URL is
    accepted for local demos and skips the pool options.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and point it at the Supabase Postgres database."
        )

    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(
            url,
            pool_size=_env_int("DB_POOL_SIZE", DEFAULT_POOL_SIZE),
            max_overflow=_env_int("DB_MAX_OVERFLOW", DEFAULT_MAX_OVERFLOW),
            pool_pre_ping=True,
            pool_timeout=10,
            pool_recycle=3600,
        )
    logger.info("Database engine created → %s (%s)", parsed.host or parsed.database, parsed.drivername)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create any missing Changemaker tables.

    Production schemas are owned by Alembic (``alembic upgrade head``);
    this is for demo and SQLite databases.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created (%d tables).", len(Base.metadata.tables))


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Await a synchronous service call on a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)
