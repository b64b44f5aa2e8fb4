"""
Read-only plan catalog lookups.

Catalog administration happens elsewhere; the ledger only reads tier limits,
prices and the billing period from configuration.
"""

from decimal import Decimal

from pydantic import BaseModel, Field

from quota_ledger.config import PlanConfig, QuotaConfig
from quota_ledger.errors import ValidationError
from quota_ledger.models.subscription import SubscriptionTier
from quota_ledger.models.usage import QuotaType


class TierLimits(BaseModel):
    """Entitlements of one tier."""

    tier: SubscriptionTier
    monthly_quota_limit: int = Field(..., ge=0)
    features: list[str] = Field(default_factory=list)


# Feature flags advertised per tier
_TIER_FEATURES: dict[SubscriptionTier, list[str]] = {
    SubscriptionTier.FREE: ["create", "reuse"],
    SubscriptionTier.BASIC: ["create", "reuse", "export"],
    SubscriptionTier.PRO: ["create", "reuse", "export", "graph", "priority_support"],
    SubscriptionTier.ADMIN: ["create", "reuse", "export", "graph", "admin"],
}


class PlanCatalog:
    """Tier limits and prices resolved from PlanConfig and QuotaConfig."""

    def __init__(self, plans: PlanConfig, quota: QuotaConfig):
        self.plans = plans
        self.quota = quota

    def get_tier_limits(self, tier: SubscriptionTier) -> TierLimits:
        """
        Look up the monthly entitlement of a tier.

        Raises:
            ValidationError: If the tier has no monthly entitlement (FREE)
        """
        limits = {
            SubscriptionTier.BASIC: self.plans.basic_monthly_quota,
            SubscriptionTier.PRO: self.plans.pro_monthly_quota,
            SubscriptionTier.ADMIN: self.plans.admin_monthly_quota,
        }
        if tier not in limits:
            raise ValidationError(f"Tier {tier.value} has no monthly entitlement")

        return TierLimits(
            tier=tier,
            monthly_quota_limit=limits[tier],
            features=list(_TIER_FEATURES[tier]),
        )

    def get_price(self, tier: SubscriptionTier) -> Decimal:
        """
        Price of one billing period of a purchasable tier.

        Raises:
            ValidationError: If the tier cannot be purchased
        """
        prices = {
            SubscriptionTier.BASIC: self.plans.basic_price,
            SubscriptionTier.PRO: self.plans.pro_price,
        }
        if tier not in prices:
            raise ValidationError(f"Tier {tier.value} cannot be purchased")
        return prices[tier]

    def get_daily_limit(self, quota_type: QuotaType) -> int:
        """Free-tier daily allowance for one quota type."""
        return {
            QuotaType.CREATE: self.quota.free_daily_create_limit,
            QuotaType.REUSE: self.quota.free_daily_reuse_limit,
            QuotaType.EXPORT: self.quota.free_daily_export_limit,
            QuotaType.GRAPH_NODES: self.quota.free_daily_graph_nodes_limit,
        }[quota_type]

    @property
    def default_paid_tier(self) -> SubscriptionTier:
        return SubscriptionTier(self.plans.default_paid_tier)

    @property
    def period_days(self) -> int:
        return self.plans.period_days

    @property
    def grace_period_days(self) -> int:
        return self.plans.grace_period_days
