"""
Ledger composition root.

Wires repositories, services and the payment provider over one database.
The API, the reconciliation script and the tests all build the ledger here.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from quota_ledger.billing.payment_gateway import PaymentGateway
from quota_ledger.billing.plan_catalog import PlanCatalog
from quota_ledger.billing.providers import PaymentProviderClient, get_payment_provider
from quota_ledger.billing.quota_service import QuotaService
from quota_ledger.billing.reconciliation import ReconciliationJob
from quota_ledger.billing.subscription_service import SubscriptionService
from quota_ledger.config import Settings, get_settings
from quota_ledger.storage.database import LedgerDatabase, get_ledger_db
from quota_ledger.storage.payment_repository import PaymentOrderRepository
from quota_ledger.storage.subscription_repository import SubscriptionRepository
from quota_ledger.storage.usage_repository import UsageRecordRepository

logger = logging.getLogger(__name__)


@dataclass
class Ledger:
    """All ledger services sharing one database."""

    db: LedgerDatabase
    catalog: PlanCatalog
    usage_repository: UsageRecordRepository
    subscription_repository: SubscriptionRepository
    payment_repository: PaymentOrderRepository
    subscription_service: SubscriptionService
    quota_service: QuotaService
    provider: PaymentProviderClient
    gateway: PaymentGateway
    reconciliation: ReconciliationJob


def build_ledger(
    settings: Settings,
    db: LedgerDatabase,
    provider: PaymentProviderClient | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Ledger:
    """
    Build the ledger services.

    Args:
        settings: Application settings
        db: Initialized ledger database
        provider: Payment provider (default: selected by PAYMENT_PROVIDER)
        clock: Time source shared by all services (default: UTC now)

    Returns:
        Ledger: Wired services
    """
    catalog = PlanCatalog(settings.plans, settings.quota)
    usage_repository = UsageRecordRepository(db)
    subscription_repository = SubscriptionRepository(db)
    payment_repository = PaymentOrderRepository(db)
    provider = provider or get_payment_provider(settings)

    subscription_service = SubscriptionService(subscription_repository, catalog, clock=clock)
    quota_service = QuotaService(
        usage_repository,
        subscription_repository,
        subscription_service,
        catalog,
        billing_tz=settings.quota.tzinfo,
        clock=clock,
    )
    gateway = PaymentGateway(
        payment_repository,
        subscription_service,
        provider,
        catalog,
        settings.payment,
        clock=clock,
    )
    reconciliation = ReconciliationJob(
        gateway, subscription_service, payment_repository, clock=clock
    )

    logger.info(
        "Ledger services initialized",
        extra={"provider": provider.name, "db_path": str(db.db_path)},
    )

    return Ledger(
        db=db,
        catalog=catalog,
        usage_repository=usage_repository,
        subscription_repository=subscription_repository,
        payment_repository=payment_repository,
        subscription_service=subscription_service,
        quota_service=quota_service,
        provider=provider,
        gateway=gateway,
        reconciliation=reconciliation,
    )


# Global instance
_ledger: Ledger | None = None


async def get_ledger() -> Ledger:
    """
    Get global ledger instance (FastAPI dependency).

    Returns:
        Ledger: Services over the configured database
    """
    global _ledger
    if _ledger is None:
        _ledger = build_ledger(get_settings(), await get_ledger_db())
    return _ledger
