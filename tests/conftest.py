"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os
import time
from datetime import UTC, datetime, timedelta

# ---------------------------------------------------------------------------
# Ensure a valid SUPABASE_JWT_SECRET is always set for test runs.
# This must happen before any import of changemaker.api.deps which
# validates the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("SUPABASE_JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from changemaker.database.models import (  # noqa: E402
    Base,
    Challenge,
    ChallengeStatus,
    Role,
    User,
    Workspace,
    WorkspaceMembership,
)

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


def run_async(coro):
    """Run an async coroutine to completion without pytest-asyncio."""
    return asyncio.run(coro)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Changemaker tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def rewardstack_credentials(monkeypatch):
    monkeypatch.setenv("REWARDSTACK_USERNAME", "platform-user")
    monkeypatch.setenv("REWARDSTACK_PASSWORD", "platform-pass")


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------
def _save(engine: Engine, row):
    with Session(engine, expire_on_commit=False) as session:
        session.add(row)
        session.commit()
        session.refresh(row)
        session.expunge(row)
    return row


def make_user(engine: Engine, email: str = "alice@example.com", **fields) -> User:
    fields.setdefault("preferences", {})
    return _save(engine, User(email=email, **fields))


def make_workspace(
    engine: Engine,
    slug: str = "acme",
    *,
    name: str = "Acme",
    reward_stack_enabled: bool = False,
    program_id: str | None = None,
) -> Workspace:
    return _save(engine, Workspace(
        slug=slug,
        name=name,
        reward_stack_enabled=reward_stack_enabled,
        reward_stack_program_id=program_id,
    ))


def add_member(
    engine: Engine, user_id: str, workspace_id: str, role: str = Role.PARTICIPANT.value
) -> WorkspaceMembership:
    return _save(engine, WorkspaceMembership(
        user_id=user_id, workspace_id=workspace_id, role=role, is_primary=False,
    ))


def make_challenge(engine: Engine, workspace_id: str, **overrides) -> Challenge:
    """A challenge that starts tomorrow and runs ten days (enrollment open)."""
    now = datetime.now(UTC)
    values = {
        "title": "Green Commute",
        "description": "Leave the car at home.",
        "start_date": now + timedelta(days=1),
        "end_date": now + timedelta(days=11),
        "enrollment_deadline": now + timedelta(days=1),
        "status": ChallengeStatus.PUBLISHED.value,
    }
    values.update(overrides)
    return _save(engine, Challenge(workspace_id=workspace_id, **values))


def make_token(
    sub: str = "supabase-alice",
    email: str = "alice@example.com",
    **claims,
) -> str:
    """Sign a Supabase-style access token with the test secret."""
    import jwt

    from changemaker.api.deps import JWT_ALGORITHM, JWT_AUDIENCE, JWT_SECRET

    payload = {
        "sub": sub,
        "email": email,
        "aud": JWT_AUDIENCE,
        "role": "authenticated",
        "exp": int(time.time()) + 3600,
        **claims,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
