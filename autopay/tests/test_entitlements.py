import pytest

from autopay.core.errors import LimitExceededError, ValidationError
from autopay.features.entitlements.service import (
    PLAN_LIMITS,
    UNLIMITED,
    LimitKind,
    PlanTier,
    can_access_feature,
    enforce_limit,
    has_reached_limit,
    limits_for,
    parse_tier,
    tier_for_state,
)


def test_table_covers_every_tier():
    assert set(PLAN_LIMITS) == set(PlanTier)


def test_free_limits():
    limits = limits_for("free")
    assert limits.max_subscriptions == 3
    assert limits.max_clients == 3
    assert limits.features == {"basic_subscriptions", "wallet_connect"}


def test_pro_adds_dashboard_features():
    limits = limits_for(PlanTier.PRO)
    assert limits.max_subscriptions == 50
    assert {"analytics", "company_dashboard", "automatic_payments", "email_notifications"} <= limits.features
    assert "api_access" not in limits.features


def test_enterprise_is_unlimited():
    limits = limits_for("enterprise")
    assert limits.max_subscriptions == UNLIMITED
    assert limits.max_clients == UNLIMITED
    assert can_access_feature("enterprise", "priority_support")


def test_feature_gating_is_membership():
    assert can_access_feature("free", "wallet_connect")
    assert not can_access_feature("free", "analytics")
    assert not can_access_feature("pro", "does_not_exist")


def test_table_cannot_be_mutated():
    with pytest.raises(TypeError):
        PLAN_LIMITS[PlanTier.FREE] = PLAN_LIMITS[PlanTier.PRO]
    with pytest.raises(Exception):
        PLAN_LIMITS[PlanTier.FREE].max_subscriptions = 100


@pytest.mark.parametrize("kind", list(LimitKind))
@pytest.mark.parametrize("count", [0, 1, 3, 50, 10_000])
def test_unlimited_never_reached(kind, count):
    assert has_reached_limit("enterprise", count, kind) is False


@pytest.mark.parametrize("tier,limit", [("free", 3), ("pro", 50)])
@pytest.mark.parametrize("kind", list(LimitKind))
def test_finite_limit_reached_iff_count_at_least_limit(tier, limit, kind):
    for count in range(0, limit + 3):
        assert has_reached_limit(tier, count, kind) is (count >= limit)


def test_enforce_limit_raises():
    enforce_limit("free", 2, "subscriptions")
    with pytest.raises(LimitExceededError) as exc:
        enforce_limit("free", 3, "subscriptions")
    assert exc.value.status_code == 403


def test_unknown_tier_and_kind_rejected():
    with pytest.raises(ValidationError):
        parse_tier("platinum")
    with pytest.raises(ValidationError):
        has_reached_limit("free", 1, "seats")


def test_tier_follows_on_chain_state():
    assert tier_for_state(True) is PlanTier.PRO
    assert tier_for_state(False) is PlanTier.FREE


def test_limits_serialize_for_dashboard():
    body = limits_for("free").as_dict()
    assert body == {
        "maxSubscriptions": 3,
        "maxClients": 3,
        "features": ["basic_subscriptions", "wallet_connect"],
    }
