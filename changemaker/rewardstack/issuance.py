"""
changemaker.rewardstack.issuance — Reward Delivery
===================================================

Submits PENDING ``reward_issuances`` rows to RewardSTACK:

* **points** → ``POST /api/program/{programId}/participant/{uniqueId}/adjustment``
* **sku**    → ``POST /api/program/{programId}/participant/{uniqueId}/transaction``
  (requires a complete shipping address on the user)
* **monetary** is not supported by RewardSTACK yet and fails the issuance.

Calls that fail with a 5xx are retried with exponential backoff
(3 attempts, 1 s doubling, capped at 10 s).  An issuance that is already
ISSUED, or that carries an external transaction / adjustment id, is never
submitted twice.

The ``issue_*`` functions do not raise: failures are written to the row
(``FAILED`` + ``error``) and returned as :class:`IssuanceResult`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy import Engine

from changemaker.database.engine import run_db
from changemaker.database.models import (
    RewardIssuance,
    RewardStackStatus,
    RewardStackSyncStatus,
    RewardStatus,
    RewardType,
    User,
    Workspace,
)
from changemaker.errors import (
    ChangemakerError,
    ResourceNotFoundError,
    RewardStackError,
    RewardStackErrorCode,
)
from changemaker.rewardstack.client import RewardStackClient, build_endpoint
from changemaker.rewardstack.participants import sync_participant
from changemaker.services import reward_service, user_service, workspace_service

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
INITIAL_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 10.0
BACKOFF_MULTIPLIER = 2

ADJUSTMENT_PATH = "/api/program/{programId}/participant/{uniqueId}/adjustment"
TRANSACTION_PATH = "/api/program/{programId}/participant/{uniqueId}/transaction"
PROGRAM_PATH = "/api/2.0/programs/{programId}"

# (user attribute, label shown to admins)
SHIPPING_FIELDS = (
    ("address_line1", "Street Address"),
    ("city", "City"),
    ("state", "State"),
    ("zip_code", "Zip Code"),
    ("country", "Country"),
)

COUNTRY_CODES = {
    "united states": "US",
    "united states of america": "US",
    "usa": "US",
    "u.s.": "US",
    "u.s.a.": "US",
    "america": "US",
    "canada": "CA",
    "mexico": "MX",
    "united kingdom": "GB",
    "uk": "GB",
    "great britain": "GB",
    "england": "GB",
    "ireland": "IE",
    "germany": "DE",
    "france": "FR",
    "spain": "ES",
    "italy": "IT",
    "netherlands": "NL",
    "australia": "AU",
    "new zealand": "NZ",
    "india": "IN",
    "japan": "JP",
}


def country_code(country: str | None) -> str | None:
    """ISO 3166 alpha-2 code for a country name or code, if known."""
    if not country:
        return None
    value = country.strip()
    if len(value) == 2 and value.isalpha():
        return value.upper()
    return COUNTRY_CODES.get(value.lower())


@dataclass
class IssuanceResult:
    success: bool
    reward_issuance_id: str
    transaction_id: str | None = None
    adjustment_id: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------
def retry_delay(attempt: int) -> float:
    """Backoff before retry number *attempt* (0-based), in seconds."""
    return min(INITIAL_DELAY_SECONDS * BACKOFF_MULTIPLIER ** attempt, MAX_DELAY_SECONDS)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    context: str,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run *operation*, retrying RewardSTACK server errors."""
    for attempt in range(MAX_ATTEMPTS):
        try:
            return await operation()
        except RewardStackError as exc:
            if not exc.retryable or attempt == MAX_ATTEMPTS - 1:
                raise
            delay = retry_delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                context, attempt + 1, MAX_ATTEMPTS, delay, exc.message,
            )
            await sleep(delay)
    raise AssertionError("unreachable")


# ---------------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------------
def already_issued(issuance: RewardIssuance) -> bool:
    if (
        issuance.status == RewardStatus.ISSUED
        and issuance.reward_stack_status == RewardStackStatus.COMPLETED
    ):
        return True
    return bool(issuance.reward_stack_transaction_id or issuance.reward_stack_adjustment_id)


def _program_config(workspace: Workspace) -> tuple[str, str]:
    if not workspace.reward_stack_enabled:
        raise ChangemakerError("RewardSTACK is not enabled for this workspace")
    if not workspace.reward_stack_program_id:
        raise ChangemakerError("RewardSTACK program ID is not configured")
    return workspace.reward_stack_program_id, workspace.reward_stack_environment


async def ensure_participant_synced(
    engine: Engine,
    user: User,
    workspace_id: str,
    *,
    client: RewardStackClient,
) -> str:
    """Return the user's participant id, syncing first when needed."""
    if (
        user.reward_stack_sync_status == RewardStackSyncStatus.SYNCED
        and user.reward_stack_participant_id
    ):
        return user.reward_stack_participant_id
    result = await sync_participant(engine, user.id, workspace_id, client=client)
    if not result.success or not result.participant_id:
        raise ChangemakerError(f"Participant sync failed: {result.error}")
    return result.participant_id


def _reward_metadata(issuance: RewardIssuance) -> dict[str, Any]:
    return {
        **(issuance.metadata_ or {}),
        "changemaker_reward_id": issuance.id,
        "changemaker_challenge_id": issuance.challenge_id,
    }


async def _fail(engine: Engine, issuance_id: str, error: str) -> IssuanceResult:
    await run_db(reward_service.mark_reward_result, engine, issuance_id, success=False, error=error)
    return IssuanceResult(success=False, reward_issuance_id=issuance_id, error=error)


async def _prepare(
    engine: Engine, issuance: RewardIssuance, client: RewardStackClient | None
) -> tuple[User, str, RewardStackClient]:
    workspace = await run_db(workspace_service.get_workspace, engine, issuance.workspace_id)
    program_id, environment = _program_config(workspace)
    user = await run_db(user_service.get_user, engine, issuance.user_id)
    return user, program_id, client or RewardStackClient(environment)


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------
async def issue_points_adjustment(
    engine: Engine,
    issuance_id: str,
    *,
    client: RewardStackClient | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> IssuanceResult:
    """Credit points to the participant's RewardSTACK account."""
    try:
        issuance = await run_db(reward_service.get_reward, engine, issuance_id)
        if already_issued(issuance):
            return IssuanceResult(
                success=True,
                reward_issuance_id=issuance.id,
                adjustment_id=issuance.reward_stack_adjustment_id,
            )
        user, program_id, client = await _prepare(engine, issuance, client)
        if not issuance.amount or issuance.amount <= 0:
            raise ChangemakerError("Points reward has no amount")

        participant_id = await ensure_participant_synced(
            engine, user, issuance.workspace_id, client=client
        )
        await run_db(reward_service.mark_reward_processing, engine, issuance.id)

        endpoint = build_endpoint(
            ADJUSTMENT_PATH, {"programId": program_id, "uniqueId": participant_id}
        )
        payload = {
            "amount": issuance.amount,
            "type": "credit",
            "description": f"Challenge reward - {issuance.challenge_id or 'Manual'}",
            "metadata": _reward_metadata(issuance),
        }
        data = await execute_with_retry(
            lambda: client.request("POST", endpoint, json=payload),
            f"Points adjustment for reward {issuance.id}",
            sleep=sleep,
        )
        adjustment_id = _response_id(data, "adjustmentId")
        await run_db(
            reward_service.mark_reward_result,
            engine, issuance.id, success=True, adjustment_id=adjustment_id,
        )
        logger.info(
            "Issued %d points to %s (adjustment %s)", issuance.amount, user.email, adjustment_id
        )
        return IssuanceResult(
            success=True, reward_issuance_id=issuance.id, adjustment_id=adjustment_id
        )
    except ResourceNotFoundError as exc:
        logger.warning("Cannot issue reward %s: %s", issuance_id, exc.message)
        return IssuanceResult(success=False, reward_issuance_id=issuance_id, error=exc.message)
    except ChangemakerError as exc:
        logger.warning("Points adjustment failed for reward %s: %s", issuance_id, exc.message)
        return await _fail(engine, issuance_id, exc.message)


def _response_id(data: Any, alt_key: str) -> str | None:
    if not isinstance(data, dict):
        return None
    value = data.get("id") or data.get(alt_key)
    return str(value) if value else None


# ---------------------------------------------------------------------------
# Catalog (SKU)
# ---------------------------------------------------------------------------
def missing_shipping_fields(user: User) -> list[str]:
    return [label for attr, label in SHIPPING_FIELDS if not getattr(user, attr, None)]


def build_shipping(user: User) -> dict[str, str]:
    return {
        "firstname": user.first_name or "",
        "lastname": user.last_name or "",
        "address1": user.address_line1 or "",
        "address2": user.address_line2 or "",
        "city": user.city or "",
        "state": user.state or "",
        "zip": user.zip_code or "",
        "country": country_code(user.country) or user.country or "",
    }


async def issue_catalog_reward(
    engine: Engine,
    issuance_id: str,
    *,
    client: RewardStackClient | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> IssuanceResult:
    """Order a catalog item (SKU) shipped to the participant."""
    try:
        issuance = await run_db(reward_service.get_reward, engine, issuance_id)
        if already_issued(issuance):
            return IssuanceResult(
                success=True,
                reward_issuance_id=issuance.id,
                transaction_id=issuance.reward_stack_transaction_id,
            )
        user, program_id, client = await _prepare(engine, issuance, client)
        if not issuance.sku_id:
            raise ChangemakerError("SKU reward has no skuId")
        missing = missing_shipping_fields(user)
        if missing:
            raise ChangemakerError(f"Missing shipping address fields: {', '.join(missing)}")

        participant_id = await ensure_participant_synced(
            engine, user, issuance.workspace_id, client=client
        )
        await run_db(reward_service.mark_reward_processing, engine, issuance.id)

        endpoint = build_endpoint(
            TRANSACTION_PATH, {"programId": program_id, "uniqueId": participant_id}
        )
        payload = {
            "products": [{"sku": issuance.sku_id, "quantity": 1}],
            "shipping": build_shipping(user),
            "issue_points": True,
            "metadata": _reward_metadata(issuance),
        }
        data = await execute_with_retry(
            lambda: client.request("POST", endpoint, json=payload),
            f"Catalog transaction for reward {issuance.id}",
            sleep=sleep,
        )
        transaction_id = _response_id(data, "transactionId")
        await run_db(
            reward_service.mark_reward_result,
            engine, issuance.id, success=True, transaction_id=transaction_id,
        )
        logger.info(
            "Ordered SKU %s for %s (transaction %s)", issuance.sku_id, user.email, transaction_id
        )
        return IssuanceResult(
            success=True, reward_issuance_id=issuance.id, transaction_id=transaction_id
        )
    except ResourceNotFoundError as exc:
        logger.warning("Cannot issue reward %s: %s", issuance_id, exc.message)
        return IssuanceResult(success=False, reward_issuance_id=issuance_id, error=exc.message)
    except ChangemakerError as exc:
        logger.warning("Catalog transaction failed for reward %s: %s", issuance_id, exc.message)
        return await _fail(engine, issuance_id, exc.message)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------
async def issue_reward_transaction(
    engine: Engine,
    issuance_id: str,
    *,
    client: RewardStackClient | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> IssuanceResult:
    """Submit one issuance according to its reward type."""
    try:
        issuance = await run_db(reward_service.get_reward, engine, issuance_id)
    except ResourceNotFoundError as exc:
        return IssuanceResult(success=False, reward_issuance_id=issuance_id, error=exc.message)

    if issuance.type == RewardType.POINTS:
        return await issue_points_adjustment(engine, issuance_id, client=client, sleep=sleep)
    if issuance.type == RewardType.SKU:
        return await issue_catalog_reward(engine, issuance_id, client=client, sleep=sleep)
    if issuance.type == RewardType.MONETARY:
        return await _fail(engine, issuance_id, "Monetary rewards not yet implemented")
    return await _fail(engine, issuance_id, f"Unknown reward type: {issuance.type}")


async def issue_rewards(
    engine: Engine,
    issuance_ids: Iterable[str],
    *,
    client: RewardStackClient | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> list[IssuanceResult]:
    """Submit several issuances one after another."""
    return [
        await issue_reward_transaction(engine, issuance_id, client=client, sleep=sleep)
        for issuance_id in issuance_ids
    ]


# ---------------------------------------------------------------------------
# Connectivity check
# ---------------------------------------------------------------------------
_CONNECTION_ERRORS = {
    RewardStackErrorCode.UNAUTHORIZED: "Authentication failed",
    RewardStackErrorCode.FORBIDDEN: "Access forbidden",
    RewardStackErrorCode.NOT_FOUND: "Program not found",
    RewardStackErrorCode.RATE_LIMIT: "Rate limit exceeded",
    RewardStackErrorCode.SERVER_ERROR: "RewardSTACK server error",
    RewardStackErrorCode.NETWORK_ERROR: "Could not reach RewardSTACK",
    RewardStackErrorCode.NOT_CONFIGURED: "RewardSTACK credentials are not configured",
}


async def test_connection(
    environment: str,
    program_id: str | None = None,
    *,
    client: RewardStackClient | None = None,
) -> dict[str, Any]:
    """Check credentials (and optionally a program) without changing anything.

    Always returns a dict with ``success``; failures carry ``error``,
    ``details`` and ``code``.
    """
    try:
        client = client or RewardStackClient(environment)
        if program_id:
            program = await client.request(
                "GET", build_endpoint(PROGRAM_PATH, {"programId": program_id})
            )
        else:
            await client.token()
            program = None
    except RewardStackError as exc:
        logger.info("RewardSTACK connection test failed (%s): %s", environment, exc.message)
        return {
            "success": False,
            "error": _CONNECTION_ERRORS.get(exc.error_code, "Connection test failed"),
            "details": exc.message,
            "code": exc.error_code.value,
        }
    return {"success": True, "environment": client.environment, "program": program}


# not a pytest test
test_connection.__test__ = False
