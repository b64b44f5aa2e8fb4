"""
Durable ledger storage: one repository per entity over a shared SQLite database.
"""

from quota_ledger.storage.database import LedgerDatabase, get_ledger_db
from quota_ledger.storage.payment_repository import PaymentOrderRepository
from quota_ledger.storage.subscription_repository import SubscriptionRepository
from quota_ledger.storage.usage_repository import UsageRecordRepository

__all__ = [
    "LedgerDatabase",
    "PaymentOrderRepository",
    "SubscriptionRepository",
    "UsageRecordRepository",
    "get_ledger_db",
]
