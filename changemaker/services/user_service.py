"""
changemaker.services.user_service — Users & Profiles
=====================================================

Local ``users`` rows mirror Supabase Auth identities.  The first
authenticated request for a Supabase user creates (or links, when an
invite already created a pending row for that e-mail) the local record.

Profile updates split into two parts:

* columns on ``users`` (names, phone, shipping address), and
* free-form preferences stored in ``users.preferences``, the local copy
  of Supabase ``user_metadata``.

When any RewardSTACK-relevant column changes, the caller should trigger a
participant sync for each RewardSTACK-enabled workspace the user is in
(see :func:`reward_sync_workspaces`).
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.models import User, Workspace, WorkspaceMembership
from changemaker.errors import ResourceNotFoundError, ValidationError

logger = logging.getLogger(__name__)

PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "display_name",
    "phone",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "zip_code",
    "country",
)

# Columns that RewardSTACK participants carry; changing one triggers a sync.
SYNC_FIELDS = frozenset(PROFILE_FIELDS) - {"display_name"}

# Names that must not be blanked by an update (an empty string is ignored).
_NAME_FIELDS = frozenset({"first_name", "last_name", "display_name"})

_STRING_PREFS = (
    "department",
    "bio",
    "organization",
    "timezone",
    "default_landing",
    "default_workspace_slug",
    "date_format",
    "ui_density",
)
_BOOL_PREFS = ("reduced_motion", "show_keyboard_hints")


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------
def get_user(engine: Engine, user_id: str) -> User:
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError("User", user_id)
        session.expunge(user)
        return user


def get_user_by_supabase_id(engine: Engine, supabase_user_id: str) -> User | None:
    with Session(engine) as session:
        user = session.scalar(select(User).where(User.supabase_user_id == supabase_user_id))
        if user is not None:
            session.expunge(user)
        return user


def get_user_by_email(engine: Engine, email: str) -> User | None:
    with Session(engine) as session:
        user = session.scalar(select(User).where(User.email == email.strip().lower()))
        if user is not None:
            session.expunge(user)
        return user


# ---------------------------------------------------------------------------
# Identity sync
# ---------------------------------------------------------------------------
def sync_user_from_claims(
    engine: Engine,
    *,
    supabase_user_id: str,
    email: str,
    user_metadata: dict[str, Any] | None = None,
) -> User:
    """Get-or-create the local user for a verified Supabase identity.

    A pending user created by an invite (same e-mail, no Supabase id yet)
    is linked instead of duplicated.  Locally stored preferences win over
    token metadata, which may be stale.
    """
    if not supabase_user_id or not email:
        raise ValidationError("Invalid user session data: missing id or email")
    email = email.strip().lower()
    metadata = dict(user_metadata or {})

    with Session(engine, expire_on_commit=False) as session:
        user = session.scalar(select(User).where(User.supabase_user_id == supabase_user_id))
        if user is None:
            user = session.scalar(select(User).where(User.email == email))
            if user is not None:
                logger.info("Linking existing user %s to Supabase identity", email)
                user.supabase_user_id = supabase_user_id
                user.is_pending = False
        if user is None:
            user = User(
                email=email,
                supabase_user_id=supabase_user_id,
                first_name=metadata.get("first_name") or None,
                last_name=metadata.get("last_name") or None,
                display_name=metadata.get("display_name") or None,
                preferences={},
            )
            session.add(user)
            logger.info("Created local user for %s", email)

        if user.email != email:
            user.email = email
        if metadata:
            user.preferences = {**metadata, **(user.preferences or {})}

        session.commit()
        session.refresh(user)
        session.expunge(user)
        return user


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------
def normalize_profile_input(
    body: dict[str, Any], current_preferences: dict[str, Any] | None = None
) -> tuple[dict[str, str | None], dict[str, Any]]:
    """Split a profile payload into column updates and preference updates.

    ``full_name`` is split on whitespace into first / last name; explicit
    ``first_name`` / ``last_name`` override it.  Blank address fields
    become ``None``.
    """
    fields: dict[str, str | None] = {}

    full_name = body.get("full_name")
    if isinstance(full_name, str) and full_name.strip():
        parts = full_name.split()
        fields["first_name"] = parts[0]
        if len(parts) > 1:
            fields["last_name"] = " ".join(parts[1:])

    for name in PROFILE_FIELDS:
        value = body.get(name)
        if not isinstance(value, str):
            continue
        value = value.strip()
        if name in _NAME_FIELDS:
            if value:
                fields[name] = value
        else:
            fields[name] = value or None

    prefs: dict[str, Any] = {}
    for key in _STRING_PREFS:
        if isinstance(body.get(key), str):
            prefs[key] = body[key].strip()
    for key in _BOOL_PREFS:
        if isinstance(body.get(key), bool):
            prefs[key] = body[key]
    notification_prefs = body.get("notification_prefs")
    if isinstance(notification_prefs, dict):
        existing = (current_preferences or {}).get("notification_prefs") or {}
        prefs["notification_prefs"] = {**existing, **notification_prefs}

    return fields, prefs


def update_profile(engine: Engine, user_id: str, body: dict[str, Any]) -> tuple[User, bool]:
    """Apply a profile payload.

    Returns ``(user, needs_reward_sync)``.

    Raises
    ------
    ValidationError
        If the payload contains no recognised field.
    """
    with Session(engine, expire_on_commit=False) as session:
        user = session.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError("User", user_id)

        fields, prefs = normalize_profile_input(body, user.preferences)
        if not fields and not prefs:
            raise ValidationError("No valid fields provided")

        for name, value in fields.items():
            setattr(user, name, value)
        if prefs:
            user.preferences = {**(user.preferences or {}), **prefs}

        session.commit()
        session.refresh(user)
        session.expunge(user)

    needs_sync = any(name in SYNC_FIELDS for name in fields)
    return user, needs_sync


def reward_sync_workspaces(engine: Engine, user_id: str) -> list[str]:
    """IDs of the user's workspaces that have RewardSTACK enabled."""
    with Session(engine) as session:
        return list(session.scalars(
            select(Workspace.id)
            .join(WorkspaceMembership, WorkspaceMembership.workspace_id == Workspace.id)
            .where(
                WorkspaceMembership.user_id == user_id,
                Workspace.reward_stack_enabled.is_(True),
            )
        ).all())


def profile_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        **{name: getattr(user, name) for name in PROFILE_FIELDS},
        "preferences": user.preferences or {},
        "reward_stack_sync_status": user.reward_stack_sync_status,
        "reward_stack_participant_id": user.reward_stack_participant_id,
    }
