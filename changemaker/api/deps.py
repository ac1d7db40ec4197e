"""
changemaker.api.deps — FastAPI dependency injection
====================================================

Authentication is delegated to Supabase Auth: clients send the Supabase
access token as ``Authorization: Bearer <jwt>``.  It is verified locally
with the project's JWT secret (HS256, audience ``authenticated``).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Path, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from changemaker.config import ChangemakerConfig, load_config
from changemaker.database.engine import create_db_engine
from changemaker.database.models import Role, User, Workspace
from changemaker.errors import AuthenticationError, ResourceNotFoundError, WorkspaceAccessError
from changemaker.services import user_service, workspace_service

logger = logging.getLogger(__name__)

_WEAK_SECRETS = frozenset({
    "super-secret-jwt-token-with-at-least-32-characters-long",
    "your-super-secret-jwt-token-with-at-least-32-characters-long",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"


def _load_jwt_secret() -> str:
    """Load and validate SUPABASE_JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("SUPABASE_JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "SUPABASE_JWT_SECRET environment variable is not set. "
            "Copy it from Supabase → Project Settings → API → JWT Secret."
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            "SUPABASE_JWT_SECRET is set to a known weak default. "
            "Please set the project's real JWT secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"SUPABASE_JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> ChangemakerConfig:
    return load_config()


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------
def get_token_claims(authorization: Annotated[str | None, Header()] = None) -> dict:
    """Validate the Supabase JWT and return its claims (401 if invalid)."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Authentication required")
    token = authorization.split(" ", 1)[1]
    try:
        claims = jwt.decode(
            token, JWT_SECRET, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE
        )
    except InvalidTokenError as exc:
        raise AuthenticationError("Invalid token") from exc
    if not claims.get("sub") or not claims.get("email"):
        raise AuthenticationError("Invalid user session data")
    return claims


def get_current_user(
    claims: dict = Depends(get_token_claims),
    engine: Engine = Depends(get_engine),
) -> User:
    """The local user for the token, created on first sight."""
    user = user_service.get_user_by_supabase_id(engine, claims["sub"])
    if user is None:
        user = user_service.sync_user_from_claims(
            engine,
            supabase_user_id=claims["sub"],
            email=claims["email"],
            user_metadata=claims.get("user_metadata"),
        )
    return user


def require_superadmin(user: User = Depends(get_current_user)) -> User:
    if not user.is_superadmin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Platform admin access required")
    return user


# ---------------------------------------------------------------------------
# Workspace scoping
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class WorkspaceContext:
    workspace: Workspace
    user: User
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def require_workspace_access(
    slug: Annotated[str, Path()],
    user: User = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> WorkspaceContext:
    """Resolve ``{slug}`` and check the caller is a member (403 otherwise)."""
    workspace = workspace_service.get_workspace_by_slug(engine, slug)
    if workspace is None:
        raise ResourceNotFoundError("Workspace", slug)
    role = workspace_service.get_member_role(engine, user.id, workspace.id)
    if role is None:
        logger.info("User %s denied access to workspace %s", user.id, slug)
        raise WorkspaceAccessError()
    return WorkspaceContext(workspace=workspace, user=user, role=role)


def require_workspace_admin(
    ctx: WorkspaceContext = Depends(require_workspace_access),
) -> WorkspaceContext:
    if not ctx.is_admin:
        raise WorkspaceAccessError("Admin access required")
    return ctx


def require_workspace_manager(
    ctx: WorkspaceContext = Depends(require_workspace_access),
) -> WorkspaceContext:
    """MANAGER or ADMIN of the workspace."""
    if ctx.role not in (Role.ADMIN, Role.MANAGER):
        raise WorkspaceAccessError("Manager access required")
    return ctx
