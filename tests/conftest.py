"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Test settings (sandbox provider, file-backed SQLite in tmp_path)
- A controllable clock shared by all services
- A fully wired ledger
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from quota_ledger.config import (
    PaymentConfig,
    PlanConfig,
    QuotaConfig,
    Settings,
    StorageConfig,
    StripeConfig,
)
from quota_ledger.ledger import Ledger, build_ledger
from quota_ledger.resilience.circuit_breakers import reset_all_breakers
from quota_ledger.storage.database import LedgerDatabase

TEST_ADMIN_KEY = "test-admin-key-0123456789abcdef0123456789"


class FakeClock:
    """Mutable UTC clock injected into the services."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _reset_breakers():
    reset_all_breakers()
    yield
    reset_all_breakers()


@pytest.fixture
def clock() -> FakeClock:
    # 12:00 in Asia/Shanghai
    return FakeClock(datetime(2025, 3, 10, 4, 0, tzinfo=UTC))


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings with the sandbox provider and reference limits."""
    return Settings(
        quota=QuotaConfig(
            free_daily_create_limit=3,
            free_daily_reuse_limit=1,
            billing_timezone="Asia/Shanghai",
        ),
        plans=PlanConfig(
            pro_monthly_quota=300,
            basic_monthly_quota=100,
            period_days=30,
            grace_period_days=3,
        ),
        payment=PaymentConfig(
            provider="sandbox",
            order_id_prefix="INSPI",
            order_ttl_minutes=30,
            provider_timeout_seconds=2.0,
            callback_secret=None,
        ),
        stripe=StripeConfig(api_key="", webhook_secret=""),
        storage=StorageConfig(db_path=str(tmp_path / "ledger.db")),
        admin_api_key=TEST_ADMIN_KEY,
    )


@pytest_asyncio.fixture
async def db(test_settings: Settings):
    database = LedgerDatabase(db_path=test_settings.storage.db_path)
    await database.initialize()
    yield database
    database.close()


@pytest.fixture
def ledger(test_settings: Settings, db: LedgerDatabase, clock: FakeClock) -> Ledger:
    return build_ledger(test_settings, db, clock=clock)


@pytest.fixture
def set_monthly_used(db: LedgerDatabase):
    """Force a subscription's monthly counter (test setup only)."""

    def _set(user_id: str, used: int) -> None:
        with db.transaction() as conn:
            conn.execute(
                "UPDATE subscriptions SET monthly_quota_used = ? WHERE user_id = ?",
                (used, user_id),
            )

    return _set


@pytest.fixture
def count_audit_rows(db: LedgerDatabase):
    """Count audit rows for an action, optionally for one resource."""

    def _count(action: str, resource_id: str | None = None) -> int:
        if resource_id is None:
            row = db.fetch_one("SELECT COUNT(*) AS n FROM audit_log WHERE action = ?", (action,))
        else:
            row = db.fetch_one(
                "SELECT COUNT(*) AS n FROM audit_log WHERE action = ? AND resource_id = ?",
                (action, resource_id),
            )
        return row["n"]

    return _count
