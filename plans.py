from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Optional

CURRENCY = "INR"


class PlanTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class UnknownPlanError(ValueError):
    def __init__(self, value):
        super().__init__(f"unknown tier: {value!r}")
        self.value = value


@dataclass(frozen=True)
class PlanCatalogEntry:
    tier: PlanTier
    label: str
    price: str
    amount: Optional[int]
    badge_label: str
    features: tuple[str, ...] = ()


# Order is the entitlement strength: a later tier includes everything before it.
PLAN_ORDER = (
    PlanTier.FREE,
    PlanTier.STARTER,
    PlanTier.PROFESSIONAL,
    PlanTier.ENTERPRISE,
)

PLAN_RANK = MappingProxyType({tier: rank for rank, tier in enumerate(PLAN_ORDER)})

PLANS = MappingProxyType({
    PlanTier.FREE: PlanCatalogEntry(
        tier=PlanTier.FREE,
        label="Free",
        price="₹0",
        amount=0,
        badge_label="Free Trial",
        features=(
            "Basic CRM",
            "Up to 100 leads",
            "1 user",
        ),
    ),
    PlanTier.STARTER: PlanCatalogEntry(
        tier=PlanTier.STARTER,
        label="Starter",
        price="₹2,999",
        amount=299900,
        badge_label="Starter",
        features=(
            "Up to 1,000 leads",
            "Email & Automation",
            "Download Invoices & Reports",
            "Data Import/Export",
            "Third-party app Integration",
            "Up to 5 users",
        ),
    ),
    PlanTier.PROFESSIONAL: PlanCatalogEntry(
        tier=PlanTier.PROFESSIONAL,
        label="Professional",
        price="₹6,999",
        amount=699900,
        badge_label="Professional",
        features=(
            "Unlimited leads",
            "Personal Branding and Theme",
            "Create custom Entities",
            "API access",
            "Up to 25 users",
        ),
    ),
    PlanTier.ENTERPRISE: PlanCatalogEntry(
        tier=PlanTier.ENTERPRISE,
        label="Enterprise",
        price="Custom",
        amount=None,
        badge_label="Enterprise",
        features=(
            "Everything in Professional",
            "Custom integrations",
            "Dedicated support",
        ),
    ),
})


def parse_tier(value) -> PlanTier:
    """Map a wire token (or a PlanTier) to a PlanTier.

    Only the four exact tokens are accepted; anything else raises
    UnknownPlanError instead of being treated as the lowest tier.
    """
    if isinstance(value, PlanTier):
        return value
    try:
        return PlanTier(value)
    except ValueError:
        raise UnknownPlanError(value) from None


def get_plan(tier) -> PlanCatalogEntry:
    return PLANS[parse_tier(tier)]


def plan_rank(tier) -> int:
    return PLAN_RANK[parse_tier(tier)]


def is_monthly(tier) -> bool:
    return parse_tier(tier) is not PlanTier.ENTERPRISE
