"""
autopay/features/entitlements/service.py

Plan tier entitlement table.

Handles:
- Per-tier limits (-1 = unlimited) and enabled feature sets
- Feature gating and quota checks
- Tier derivation from on-chain subscription state

The table is process-wide and read-only. Changing a limit means shipping a
new table.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping, Union
import logging

from autopay.core.errors import LimitExceededError, ValidationError


logger = logging.getLogger(__name__)

UNLIMITED = -1


class PlanTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class LimitKind(str, Enum):
    SUBSCRIPTIONS = "subscriptions"
    CLIENTS = "clients"


@dataclass(frozen=True)
class PlanLimits:
    max_subscriptions: int
    max_clients: int
    features: FrozenSet[str]

    def as_dict(self) -> dict:
        return {
            "maxSubscriptions": self.max_subscriptions,
            "maxClients": self.max_clients,
            "features": sorted(self.features),
        }


_BASE_FEATURES = frozenset({"basic_subscriptions", "wallet_connect"})
_PRO_FEATURES = _BASE_FEATURES | {
    "analytics",
    "email_notifications",
    "company_dashboard",
    "automatic_payments",
}

PLAN_LIMITS: Mapping[PlanTier, PlanLimits] = MappingProxyType({
    PlanTier.FREE: PlanLimits(
        max_subscriptions=3,
        max_clients=3,
        features=_BASE_FEATURES,
    ),
    PlanTier.PRO: PlanLimits(
        max_subscriptions=50,
        max_clients=50,
        features=_PRO_FEATURES,
    ),
    PlanTier.ENTERPRISE: PlanLimits(
        max_subscriptions=UNLIMITED,
        max_clients=UNLIMITED,
        features=_PRO_FEATURES | {"api_access", "priority_support"},
    ),
})


def parse_tier(tier: Union[str, PlanTier]) -> PlanTier:
    if isinstance(tier, PlanTier):
        return tier
    try:
        return PlanTier(str(tier).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown plan tier: {tier!r}")


def limits_for(tier: Union[str, PlanTier]) -> PlanLimits:
    return PLAN_LIMITS[parse_tier(tier)]


def can_access_feature(tier: Union[str, PlanTier], feature: str) -> bool:
    return feature in limits_for(tier).features


def _limit_value(limits: PlanLimits, kind: Union[str, LimitKind]) -> int:
    try:
        limit_kind = LimitKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown limit kind: {kind!r}")
    if limit_kind is LimitKind.SUBSCRIPTIONS:
        return limits.max_subscriptions
    return limits.max_clients


def has_reached_limit(tier: Union[str, PlanTier], current_count: int, kind: Union[str, LimitKind]) -> bool:
    """True when `current_count` has hit the tier's quota. Unlimited quotas never do."""
    limit = _limit_value(limits_for(tier), kind)
    if limit == UNLIMITED:
        return False
    return current_count >= limit


def enforce_limit(tier: Union[str, PlanTier], current_count: int, kind: Union[str, LimitKind]) -> None:
    if has_reached_limit(tier, current_count, kind):
        resolved = parse_tier(tier)
        logger.warning(
            "[entitlements] limit reached",
            extra={"tier": resolved.value, "kind": str(LimitKind(kind).value), "current_count": current_count},
        )
        raise LimitExceededError(f"{LimitKind(kind).value.capitalize()} limit reached for the {resolved.value} plan")


def tier_for_state(is_active: bool) -> PlanTier:
    """Every paid on-chain subscription currently maps to pro."""
    return PlanTier.PRO if is_active else PlanTier.FREE
