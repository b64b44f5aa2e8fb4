"""
Quota metering, subscription lifecycle and payment reconciliation.
"""

from quota_ledger.billing.payment_gateway import PaymentGateway
from quota_ledger.billing.plan_catalog import PlanCatalog, TierLimits
from quota_ledger.billing.providers import (
    PaymentProviderClient,
    SandboxPaymentProvider,
    StripePaymentProvider,
    get_payment_provider,
)
from quota_ledger.billing.quota_service import QuotaService
from quota_ledger.billing.reconciliation import ReconciliationJob, ReconciliationReport
from quota_ledger.billing.subscription_service import SubscriptionService

__all__ = [
    "PaymentGateway",
    "PaymentProviderClient",
    "PlanCatalog",
    "QuotaService",
    "ReconciliationJob",
    "ReconciliationReport",
    "SandboxPaymentProvider",
    "StripePaymentProvider",
    "SubscriptionService",
    "TierLimits",
    "get_payment_provider",
]
