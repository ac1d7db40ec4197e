"""
changemaker.rewardstack.auth — RewardSTACK Token Acquisition & Cache
=====================================================================

RewardSTACK (the ADR marketplace platform) issues JWT bearer tokens in
exchange for HTTP Basic credentials::

    POST {base}/token
    Authorization: Basic base64(username:password)
    {"hoursUntilExpiry": 8760, "tokenName": "Changemaker Platform"}

    → {"token": "<jwt>", "expires": <unix seconds>}

Credentials are platform-wide (``REWARDSTACK_USERNAME`` /
``REWARDSTACK_PASSWORD``), so one token serves every workspace that uses
the same environment.  Tokens are cached per environment in process
memory and treated as expired five minutes before RewardSTACK says they
are.  Several processes may each fetch their own token; that is harmless.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

import httpx

from changemaker.errors import RewardStackError, RewardStackErrorCode

logger = logging.getLogger(__name__)

REWARDSTACK_ENDPOINTS: dict[str, str] = {
    "QA": "https://admin.adrqa.info",
    "PRODUCTION": "https://admin.adr.info",
}

TOKEN_REFRESH_BUFFER = timedelta(minutes=5)

DEFAULT_TOKEN_HOURS = 8760
DEFAULT_TOKEN_NAME = "Changemaker Platform"
TOKEN_REQUEST_TIMEOUT = 15.0


def normalize_environment(environment: str | None) -> str:
    env = (environment or "QA").strip().upper()
    if env not in REWARDSTACK_ENDPOINTS:
        raise RewardStackError(
            f"Unknown RewardSTACK environment: {environment}",
            RewardStackErrorCode.VALIDATION_ERROR,
        )
    return env


def base_url_for(environment: str | None) -> str:
    return REWARDSTACK_ENDPOINTS[normalize_environment(environment)]


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CachedToken:
    token: str
    expires_at: float
    """Unix seconds after which the token must not be reused (buffer applied)."""


class TokenCache:
    """Thread-safe per-environment token store.

    The lock guards only the dict; token requests happen outside it, so
    two concurrent misses may both fetch a token and the last write wins.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._entries: dict[str, CachedToken] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, environment: str) -> str | None:
        with self._lock:
            entry = self._entries.get(environment)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry.token

    def set(self, environment: str, entry: CachedToken) -> None:
        with self._lock:
            self._entries[environment] = entry

    def clear(self, environment: str = "QA") -> None:
        with self._lock:
            self._entries.pop(environment, None)

    def clear_all(self) -> None:
        with self._lock:
            self._entries.clear()


token_cache = TokenCache()


# ---------------------------------------------------------------------------
# Token requests
# ---------------------------------------------------------------------------
def _credentials() -> tuple[str, str]:
    username = os.getenv("REWARDSTACK_USERNAME", "").strip()
    password = os.getenv("REWARDSTACK_PASSWORD", "").strip()
    if not username or not password:
        raise RewardStackError(
            "RewardSTACK credentials not configured. Set REWARDSTACK_USERNAME "
            "and REWARDSTACK_PASSWORD environment variables.",
            RewardStackErrorCode.NOT_CONFIGURED,
        )
    return username, password


async def obtain_token(
    environment: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    hours_until_expiry: int = DEFAULT_TOKEN_HOURS,
    token_name: str = DEFAULT_TOKEN_NAME,
) -> CachedToken:
    """Request a fresh token; the returned expiry already has the buffer subtracted."""
    env = normalize_environment(environment)
    username, password = _credentials()
    url = f"{REWARDSTACK_ENDPOINTS[env]}/token"

    try:
        async with httpx.AsyncClient(timeout=TOKEN_REQUEST_TIMEOUT, transport=transport) as client:
            resp = await client.post(
                url,
                auth=httpx.BasicAuth(username, password),
                json={"hoursUntilExpiry": hours_until_expiry, "tokenName": token_name},
            )
    except httpx.TransportError as exc:
        raise RewardStackError(
            f"Failed to obtain RewardSTACK token: {exc}",
            RewardStackErrorCode.NETWORK_ERROR,
        ) from exc

    if resp.status_code >= 400:
        code = (
            RewardStackErrorCode.UNAUTHORIZED
            if resp.status_code in (401, 403)
            else RewardStackErrorCode.SERVER_ERROR
            if resp.status_code >= 500
            else RewardStackErrorCode.VALIDATION_ERROR
        )
        raise RewardStackError(
            f"RewardSTACK authentication failed ({resp.status_code}): {resp.text}",
            code,
            resp.status_code,
        )

    try:
        data = resp.json()
    except ValueError:
        data = {}
    token = data.get("token") if isinstance(data, dict) else None
    expires = data.get("expires") if isinstance(data, dict) else None
    if not token or not expires:
        raise RewardStackError(
            "Invalid token response from RewardSTACK API",
            RewardStackErrorCode.VALIDATION_ERROR,
            resp.status_code,
        )

    expires_at = float(expires) - TOKEN_REFRESH_BUFFER.total_seconds()
    logger.info("Obtained RewardSTACK token for %s (usable until %s)", env, int(expires_at))
    return CachedToken(token=token, expires_at=expires_at)


async def get_token(
    environment: str,
    *,
    cache: TokenCache | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    hours_until_expiry: int = DEFAULT_TOKEN_HOURS,
    token_name: str = DEFAULT_TOKEN_NAME,
) -> str:
    """Return a cached token for *environment*, fetching a new one when needed."""
    env = normalize_environment(environment)
    cache = cache or token_cache

    cached = cache.get(env)
    if cached is not None:
        return cached

    entry = await obtain_token(
        env,
        transport=transport,
        hours_until_expiry=hours_until_expiry,
        token_name=token_name,
    )
    cache.set(env, entry)
    return entry.token
