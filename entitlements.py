from dataclasses import dataclass

from plans import PlanTier, parse_tier, plan_rank

DEFAULT_FEATURE_LABEL = "this feature"


class UnknownFeatureError(KeyError):
    pass


@dataclass(frozen=True)
class Feature:
    key: str
    label: str
    required_plan: PlanTier


@dataclass(frozen=True)
class EntitlementQuery:
    current_plan: PlanTier
    required_plan: PlanTier
    feature_label: str = DEFAULT_FEATURE_LABEL

    def __post_init__(self):
        object.__setattr__(self, "current_plan", parse_tier(self.current_plan))
        object.__setattr__(self, "required_plan", parse_tier(self.required_plan))
        if not self.feature_label:
            object.__setattr__(self, "feature_label", DEFAULT_FEATURE_LABEL)


@dataclass(frozen=True)
class UpgradeDecision:
    needs_upgrade: bool


FEATURES = {
    feature.key: feature
    for feature in (
        Feature("email_automation", "Email & Automation", PlanTier.STARTER),
        Feature("reports", "Download Invoices & Reports", PlanTier.STARTER),
        Feature("data_export", "Data Import/Export", PlanTier.STARTER),
        Feature("integrations", "Third-party app Integration", PlanTier.STARTER),
        Feature("branding", "Personal Branding and Theme", PlanTier.PROFESSIONAL),
        Feature("custom_entities", "Create custom Entities", PlanTier.PROFESSIONAL),
        Feature("api_access", "API access", PlanTier.PROFESSIONAL),
        Feature("custom_integrations", "Custom integrations", PlanTier.ENTERPRISE),
        Feature("dedicated_support", "Dedicated support", PlanTier.ENTERPRISE),
    )
}


def decide(current_plan, required_plan) -> bool:
    """Return True when current_plan ranks below required_plan.

    Equal tiers are never gated. Unrecognised tiers raise UnknownPlanError.
    """
    return plan_rank(current_plan) < plan_rank(required_plan)


def evaluate(query: EntitlementQuery) -> UpgradeDecision:
    return UpgradeDecision(needs_upgrade=decide(query.current_plan, query.required_plan))


def get_feature(feature_key: str) -> Feature:
    try:
        return FEATURES[feature_key]
    except KeyError:
        raise UnknownFeatureError(feature_key) from None


def query_for_feature(current_plan, feature_key: str) -> EntitlementQuery:
    feature = get_feature(feature_key)
    return EntitlementQuery(
        current_plan=current_plan,
        required_plan=feature.required_plan,
        feature_label=feature.label,
    )


def can_access(current_plan, feature_key: str) -> bool:
    return not evaluate(query_for_feature(current_plan, feature_key)).needs_upgrade
