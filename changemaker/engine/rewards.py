"""
changemaker.engine.rewards — Reward Type Presentation & Amounts
================================================================

Pure helpers shared by services and API serializers.  A challenge or
activity template carries an optional ``reward_type`` (points / sku /
monetary) plus a free-form ``reward_config`` mapping; these functions turn
that pair into labels and concrete issuance amounts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from changemaker.database.models import RewardType
from changemaker.errors import ValidationError

DEFAULT_SKU_PROVIDER = "RewardSTACK"

_LABELS = {
    RewardType.POINTS: "Points Earned",
    RewardType.SKU: "Rewards Issued",
    RewardType.MONETARY: "Rewards Earned",
}

_SHORT_LABELS = {
    RewardType.POINTS: "Points",
    RewardType.SKU: "Rewards",
    RewardType.MONETARY: "Earnings",
}

_UNITS = {
    RewardType.POINTS: "pts",
    RewardType.SKU: "items",
    RewardType.MONETARY: "",
}

_DESCRIPTIONS = {
    RewardType.POINTS: "Earn points by completing activities",
    RewardType.SKU: "Earn reward items by completing activities",
    RewardType.MONETARY: "Earn monetary rewards by completing activities",
}


def _coerce(reward_type: str | None) -> RewardType | None:
    if not reward_type:
        return None
    try:
        return RewardType(reward_type)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------
def reward_label(reward_type: str | None) -> str:
    rt = _coerce(reward_type)
    return _LABELS[rt] if rt else "Points"


def reward_label_short(reward_type: str | None) -> str:
    rt = _coerce(reward_type)
    return _SHORT_LABELS[rt] if rt else "Points"


def reward_unit(reward_type: str | None) -> str:
    rt = _coerce(reward_type)
    return _UNITS[rt] if rt else "pts"


def reward_description(reward_type: str | None) -> str:
    rt = _coerce(reward_type)
    return _DESCRIPTIONS[rt] if rt else _DESCRIPTIONS[RewardType.POINTS]


def format_reward_value(reward_type: str | None, value: float) -> str:
    """``monetary`` → ``$12.50``; everything else is the bare number."""
    if _coerce(reward_type) is RewardType.MONETARY:
        return f"${value:.2f}"
    if float(value).is_integer():
        return str(int(value))
    return str(value)


# ---------------------------------------------------------------------------
# Amount resolution
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ResolvedReward:
    type: str
    amount: int | None = None
    sku_id: str | None = None
    provider: str | None = None
    currency: str | None = None


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def resolve_submission_reward(
    reward_type: str | None,
    reward_config: dict | None,
    base_points: int = 0,
) -> ResolvedReward:
    """Work out what an approved submission earns.

    * points   → ``reward_config.pointsAmount`` or the template's base points
    * sku      → ``reward_config.skuId`` with ``productValue`` as the amount
    * monetary → ``reward_config.amount`` (and ``currency``, default USD)
    """
    config = reward_config or {}
    rt = _coerce(reward_type) or RewardType.POINTS

    if rt is RewardType.SKU:
        return ResolvedReward(
            type=rt.value,
            amount=_int_or_none(config.get("productValue")),
            sku_id=config.get("skuId"),
            provider=config.get("provider") or DEFAULT_SKU_PROVIDER,
        )
    if rt is RewardType.MONETARY:
        return ResolvedReward(
            type=rt.value,
            amount=_int_or_none(config.get("amount")),
            currency=config.get("currency") or "USD",
        )

    amount = _int_or_none(config.get("pointsAmount"))
    return ResolvedReward(type=rt.value, amount=amount if amount is not None else base_points)


def validate_reward_request(
    reward_type: str,
    *,
    amount: int | None = None,
    currency: str | None = None,
    sku_id: str | None = None,
) -> RewardType:
    """Raise :class:`ValidationError` unless the fields suit *reward_type*."""
    rt = _coerce(reward_type)
    if rt is None:
        raise ValidationError(f"Invalid reward type: {reward_type}")
    if rt is RewardType.POINTS and (amount is None or amount <= 0):
        raise ValidationError("Points rewards require a positive amount")
    if rt is RewardType.MONETARY:
        if amount is None or amount <= 0:
            raise ValidationError("Monetary rewards require a positive amount")
        if not currency:
            raise ValidationError("Monetary rewards require a currency")
    if rt is RewardType.SKU and not sku_id:
        raise ValidationError("SKU rewards require a skuId")
    return rt
