"""
changemaker.engine.invites — Bulk Invite Parsing
=================================================

Admins paste a list of people to invite, either as plain text::

    alice@example.com,ADMIN,Alice Smith
    bob@example.com
    carol@example.com,manager

or as JSON (``[{"email": ..., "role": ..., "name": ...}]`` or
``{"items": [...]}``).  Every item is normalised to a lower-cased e-mail,
one of the three workspace roles (PARTICIPANT when missing or unknown)
and an optional name.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from changemaker.database.models import Role

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_ROLES = frozenset(r.value for r in Role)


@dataclass(frozen=True)
class InviteItem:
    email: str
    role: str = Role.PARTICIPANT.value
    name: str | None = None


def _role_or_none(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    candidate = value.strip().upper()
    return candidate if candidate in _ROLES else None


def parse_text_list(body: str) -> list[InviteItem]:
    """One ``email[,role][,name]`` entry per line; blank lines are ignored."""
    items: list[InviteItem] = []
    for line in body.splitlines():
        parts = [p.strip() for p in line.strip().split(",")]
        parts = [p for p in parts if p]
        if not parts:
            continue
        email = parts[0]
        role = _role_or_none(parts[1]) if len(parts) > 1 else None
        name = parts[2] if len(parts) > 2 else None
        items.append(InviteItem(email=email, role=role or Role.PARTICIPANT.value, name=name))
    return items


def parse_json_items(body: Any) -> list[InviteItem]:
    """Accept a bare list or an ``{"items": [...]}`` wrapper; anything else is empty."""
    if isinstance(body, dict):
        body = body.get("items")
    if not isinstance(body, list):
        return []

    items: list[InviteItem] = []
    for raw in body:
        if not isinstance(raw, dict):
            continue
        items.append(InviteItem(
            email=str(raw.get("email") or ""),
            role=_role_or_none(raw.get("role")) or Role.PARTICIPANT.value,
            name=raw.get("name") if isinstance(raw.get("name"), str) else None,
        ))
    return items


def normalize_items(items: list[InviteItem]) -> list[InviteItem]:
    """Trim and lower-case e-mails, coerce roles, drop entries with no e-mail."""
    normalized: list[InviteItem] = []
    for item in items:
        email = (item.email or "").strip().lower()
        if not email:
            continue
        normalized.append(InviteItem(
            email=email,
            role=_role_or_none(item.role) or Role.PARTICIPANT.value,
            name=(item.name or "").strip() or None,
        ))
    return normalized


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email))
