"""
changemaker.config — YAML Configuration Loader
===============================================

Reads ``config.yaml`` for infrastructure settings that are shared by every
workspace (invite expiry, leaderboard sizes, RewardSTACK token options).
Secrets (database URL, JWT secret, RewardSTACK credentials) are read from
the environment instead.

Usage::

    from changemaker.config import load_config

    cfg = load_config()              # reads $CHANGEMAKER_CONFIG or ./config.yaml
    print(cfg.app_name)              # "Changemaker"
    print(cfg.invite_expiry_hours)   # 168
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChangemakerConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    app_name: str
    frontend_url: str

    # Invites
    invite_expiry_hours: int = 168
    bulk_invite_limit: int = 50
    bulk_invite_window_seconds: int = 60

    # Analytics
    stalled_invite_days: int = 7
    leaderboard_limit: int = 10

    # RewardSTACK
    rewardstack_default_environment: str = "QA"
    rewardstack_token_hours: int = 8760
    rewardstack_token_name: str = "Changemaker Platform"
    rewardstack_sync_stale_minutes: int = 60


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def default_config_path() -> Path:
    return Path(os.getenv("CHANGEMAKER_CONFIG", "config.yaml"))


def load_config(path: str | Path | None = None) -> ChangemakerConfig:
    """Read *path* and return a :class:`ChangemakerConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  Defaults to
        ``$CHANGEMAKER_CONFIG`` or ``config.yaml`` in the working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path) if path is not None else default_config_path()
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return config_from_dict(raw)


def config_from_dict(raw: dict) -> ChangemakerConfig:
    """Build a config from an already-parsed mapping (``app_name`` and
    ``frontend_url`` are required; everything else has a default)."""
    defaults = ChangemakerConfig(app_name="", frontend_url="")
    return ChangemakerConfig(
        app_name=raw["app_name"],
        frontend_url=str(raw["frontend_url"]).rstrip("/"),
        invite_expiry_hours=int(raw.get("invite_expiry_hours", defaults.invite_expiry_hours)),
        bulk_invite_limit=int(raw.get("bulk_invite_limit", defaults.bulk_invite_limit)),
        bulk_invite_window_seconds=int(
            raw.get("bulk_invite_window_seconds", defaults.bulk_invite_window_seconds)
        ),
        stalled_invite_days=int(raw.get("stalled_invite_days", defaults.stalled_invite_days)),
        leaderboard_limit=int(raw.get("leaderboard_limit", defaults.leaderboard_limit)),
        rewardstack_default_environment=str(
            raw.get("rewardstack_default_environment", defaults.rewardstack_default_environment)
        ).upper(),
        rewardstack_token_hours=int(
            raw.get("rewardstack_token_hours", defaults.rewardstack_token_hours)
        ),
        rewardstack_token_name=str(
            raw.get("rewardstack_token_name", defaults.rewardstack_token_name)
        ),
        rewardstack_sync_stale_minutes=int(
            raw.get("rewardstack_sync_stale_minutes", defaults.rewardstack_sync_stale_minutes)
        ),
    )
