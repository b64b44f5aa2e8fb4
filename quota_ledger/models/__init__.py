"""
Ledger data models.
"""

from quota_ledger.models.payment import (
    CreateOrderRequest,
    CreateOrderResult,
    PaymentCallback,
    PaymentOrder,
    PaymentStatus,
    PaymentType,
)
from quota_ledger.models.subscription import (
    CancelResult,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)
from quota_ledger.models.usage import (
    DailyUsage,
    QuotaPeriod,
    QuotaResult,
    QuotaStatus,
    QuotaType,
    UsageRecord,
)

__all__ = [
    "CancelResult",
    "CreateOrderRequest",
    "CreateOrderResult",
    "DailyUsage",
    "PaymentCallback",
    "PaymentOrder",
    "PaymentStatus",
    "PaymentType",
    "QuotaPeriod",
    "QuotaResult",
    "QuotaStatus",
    "QuotaType",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionTier",
    "UsageRecord",
]
