import itertools

import pytest

from entitlements import (
    EntitlementQuery,
    UnknownFeatureError,
    can_access,
    decide,
    evaluate,
    query_for_feature,
)
from plans import PLAN_ORDER, PLANS, PlanTier, UnknownPlanError, is_monthly, parse_tier, plan_rank


def test_plan_order_free_to_enterprise():
    assert [tier.value for tier in PLAN_ORDER] == ["free", "starter", "professional", "enterprise"]
    assert [plan_rank(tier) for tier in PLAN_ORDER] == [0, 1, 2, 3]


def test_catalog_prices():
    assert PLANS[PlanTier.STARTER].price == "₹2,999"
    assert PLANS[PlanTier.PROFESSIONAL].price == "₹6,999"
    assert PLANS[PlanTier.ENTERPRISE].price == "Custom"
    assert PLANS[PlanTier.ENTERPRISE].amount is None
    assert PLANS[PlanTier.FREE].badge_label == "Free Trial"


def test_catalog_is_read_only():
    with pytest.raises(TypeError):
        PLANS[PlanTier.FREE] = PLANS[PlanTier.STARTER]


def test_decide_matches_rank_order_for_all_pairs():
    for current, required in itertools.product(PLAN_ORDER, repeat=2):
        expected = PLAN_ORDER.index(current) < PLAN_ORDER.index(required)
        assert decide(current, required) is expected
        assert decide(current.value, required.value) is expected


def test_decide_examples():
    assert decide("professional", "starter") is False
    assert decide("free", "enterprise") is True
    assert decide("starter", "starter") is False


@pytest.mark.parametrize("bad", ["gold", "", None, "Starter", " free"])
def test_unknown_tier_fails_loudly(bad):
    with pytest.raises(UnknownPlanError):
        decide(bad, "starter")
    with pytest.raises(UnknownPlanError):
        decide("starter", bad)


def test_parse_tier_accepts_enum_and_token():
    assert parse_tier(PlanTier.STARTER) is PlanTier.STARTER
    assert parse_tier("enterprise") is PlanTier.ENTERPRISE


def test_is_monthly():
    assert is_monthly("starter")
    assert is_monthly("professional")
    assert not is_monthly("enterprise")


def test_query_defaults_feature_label():
    query = EntitlementQuery(current_plan="free", required_plan="starter")
    assert query.feature_label == "this feature"
    assert query.current_plan is PlanTier.FREE
    assert evaluate(query).needs_upgrade is True


def test_query_rejects_unknown_tier():
    with pytest.raises(UnknownPlanError):
        EntitlementQuery(current_plan="platinum", required_plan="starter")


def test_feature_map():
    query = query_for_feature("free", "api_access")
    assert query.required_plan is PlanTier.PROFESSIONAL
    assert query.feature_label == "API access"
    assert can_access("starter", "data_export")
    assert not can_access("free", "data_export")
    assert can_access("enterprise", "dedicated_support")
    assert not can_access("professional", "custom_integrations")


def test_unknown_feature():
    with pytest.raises(UnknownFeatureError):
        can_access("free", "time_travel")
