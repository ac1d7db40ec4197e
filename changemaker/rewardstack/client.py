"""
changemaker.rewardstack.client — Authenticated RewardSTACK HTTP Client
=======================================================================

Wraps :mod:`httpx` with bearer-token injection and status → error-code
mapping.  A 401 clears the cached token for the client's environment and
retries the request once with a fresh token.

Usage::

    client = RewardStackClient("QA")
    endpoint = build_endpoint("/api/program/{programId}/participant", {"programId": pid})
    created = await client.request("POST", endpoint, json=payload)
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from changemaker.config import ChangemakerConfig
from changemaker.errors import RewardStackError, RewardStackErrorCode
from changemaker.rewardstack.auth import (
    DEFAULT_TOKEN_HOURS,
    DEFAULT_TOKEN_NAME,
    REWARDSTACK_ENDPOINTS,
    TokenCache,
    get_token,
    normalize_environment,
    token_cache,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 15.0


def build_endpoint(template: str, params: dict[str, str]) -> str:
    """Fill ``{name}`` placeholders with URL-encoded values.

    >>> build_endpoint("/api/program/{programId}/participant/{uniqueId}",
    ...                {"programId": "p 1", "uniqueId": "u/2"})
    '/api/program/p%201/participant/u%2F2'
    """
    endpoint = template
    for key, value in params.items():
        endpoint = endpoint.replace(f"{{{key}}}", quote(str(value), safe=""))
    return endpoint


def _error_message(resp: httpx.Response, default: str) -> tuple[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return default, None
    message = body.get("message") if isinstance(body, dict) else None
    if isinstance(message, list):
        message = "; ".join(str(m) for m in message)
    return (message or default), body


class RewardStackClient:
    """Per-environment API client.

    Parameters
    ----------
    environment:
        ``QA`` or ``PRODUCTION``.
    transport:
        Optional httpx transport (tests pass :class:`httpx.MockTransport`).
    cache:
        Token cache; defaults to the process-wide one.
    cfg:
        When given, token lifetime and name come from the config file.
    """

    def __init__(
        self,
        environment: str = "QA",
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        cache: TokenCache | None = None,
        cfg: ChangemakerConfig | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.environment = normalize_environment(environment)
        self.base_url = REWARDSTACK_ENDPOINTS[self.environment]
        self.transport = transport
        self.cache = cache or token_cache
        self.timeout = timeout
        self.token_hours = cfg.rewardstack_token_hours if cfg else DEFAULT_TOKEN_HOURS
        self.token_name = cfg.rewardstack_token_name if cfg else DEFAULT_TOKEN_NAME

    async def token(self) -> str:
        """Bearer token for this environment (cached)."""
        return await get_token(
            self.environment,
            cache=self.cache,
            transport=self.transport,
            hours_until_expiry=self.token_hours,
            token_name=self.token_name,
        )

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Any = None,
        retry_auth: bool = True,
    ) -> Any:
        """Send an authenticated request and return the decoded JSON body.

        Raises
        ------
        RewardStackError
            For any non-2xx answer or transport failure.
        """
        token = await self.token()
        url = f"{self.base_url}{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as http:
                resp = await http.request(
                    method,
                    url,
                    json=json,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.TransportError as exc:
            raise RewardStackError(
                f"Network error: {exc}", RewardStackErrorCode.NETWORK_ERROR
            ) from exc

        status = resp.status_code
        if status == 401:
            if retry_auth:
                logger.info("RewardSTACK rejected token for %s; refreshing", self.environment)
                self.cache.clear(self.environment)
                return await self.request(method, endpoint, json=json, retry_auth=False)
            raise RewardStackError(
                "Authentication failed - invalid credentials or expired token",
                RewardStackErrorCode.UNAUTHORIZED,
                401,
            )
        if status == 403:
            raise RewardStackError(
                "Access forbidden - insufficient permissions",
                RewardStackErrorCode.FORBIDDEN,
                403,
            )
        if status == 404:
            raise RewardStackError("Resource not found", RewardStackErrorCode.NOT_FOUND, 404)
        if status == 429:
            raise RewardStackError("Rate limit exceeded", RewardStackErrorCode.RATE_LIMIT, 429)
        if status >= 500:
            message, body = _error_message(resp, "RewardSTACK server error")
            raise RewardStackError(message, RewardStackErrorCode.SERVER_ERROR, status, body)
        if status >= 400:
            message, body = _error_message(resp, "Request failed")
            raise RewardStackError(message, RewardStackErrorCode.VALIDATION_ERROR, status, body)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}
