"""
Tests for the ledger repositories and their conditional writes.
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from quota_ledger.errors import ConflictError
from quota_ledger.models.payment import PaymentOrder, PaymentStatus, PaymentType
from quota_ledger.models.subscription import Subscription, SubscriptionStatus, SubscriptionTier
from quota_ledger.models.usage import QuotaType
from quota_ledger.storage.database import LedgerDatabase, format_ts, parse_ts
from quota_ledger.storage.payment_repository import PaymentOrderRepository
from quota_ledger.storage.subscription_repository import SubscriptionRepository
from quota_ledger.storage.usage_repository import UsageRecordRepository

NOW = datetime(2025, 3, 10, 4, 0, tzinfo=UTC)


def make_order(order_id: str = "INSPI1", **overrides) -> PaymentOrder:
    fields = dict(
        order_id=order_id,
        user_id="payer-1",
        type=PaymentType.INITIAL,
        tier=SubscriptionTier.PRO,
        amount=Decimal("15.00"),
        created_at=NOW,
        expires_at=NOW + timedelta(minutes=30),
    )
    fields.update(overrides)
    return PaymentOrder(**fields)


def active_subscription(current: Subscription | None) -> Subscription:
    return Subscription(
        user_id="sub-1",
        tier=SubscriptionTier.BASIC,
        status=SubscriptionStatus.ACTIVE,
        monthly_quota_limit=2,
        current_period_start=NOW,
        current_period_end=NOW + timedelta(days=30),
        created_at=NOW,
        updated_at=NOW,
    )


class TestTimestamps:
    def test_format_is_fixed_width_utc(self):
        shanghai = datetime.fromisoformat("2025-03-10T12:00:00+08:00")

        assert format_ts(shanghai) == "2025-03-10T04:00:00.000000+00:00"
        assert parse_ts(format_ts(shanghai)) == shanghai

    def test_naive_is_treated_as_utc(self):
        assert format_ts(datetime(2025, 1, 1)) == "2025-01-01T00:00:00.000000+00:00"

    def test_none_passthrough(self):
        assert format_ts(None) is None
        assert parse_ts(None) is None


class TestUsageRecordRepository:
    @pytest.mark.asyncio
    async def test_increment_stops_at_limit(self, db):
        repository = UsageRecordRepository(db)
        day = date(2025, 3, 10)

        outcomes = [
            await repository.increment_if_below("u1", QuotaType.CREATE, day, 2) for _ in range(3)
        ]

        assert outcomes == [1, 2, None]
        assert await repository.get_count("u1", QuotaType.CREATE, day) == 2

    @pytest.mark.asyncio
    async def test_zero_limit_refuses_immediately(self, db):
        repository = UsageRecordRepository(db)

        assert await repository.increment_if_below("u1", QuotaType.REUSE, date.today(), 0) is None

    @pytest.mark.asyncio
    async def test_records_are_per_day(self, db):
        repository = UsageRecordRepository(db)
        await repository.increment_if_below("u1", QuotaType.CREATE, date(2025, 3, 10), 3)
        await repository.increment_if_below("u1", QuotaType.EXPORT, date(2025, 3, 10), 3)
        await repository.increment_if_below("u1", QuotaType.CREATE, date(2025, 3, 11), 3)

        records = await repository.get_records("u1", date(2025, 3, 10))

        assert {(r.quota_type, r.count) for r in records} == {
            (QuotaType.CREATE, 1),
            (QuotaType.EXPORT, 1),
        }


class TestSubscriptionRepository:
    @pytest.mark.asyncio
    async def test_provision_without_order_always_applies(self, db, count_audit_rows):
        repository = SubscriptionRepository(db)

        _, first = await repository.provision("sub-1", None, active_subscription, NOW)
        _, second = await repository.provision("sub-1", None, active_subscription, NOW)

        assert first and second
        assert count_audit_rows("PROVISION") == 2

    @pytest.mark.asyncio
    async def test_provision_once_per_order(self, db):
        repository = SubscriptionRepository(db)
        seen: list[Subscription | None] = []

        def build(current):
            seen.append(current)
            return active_subscription(current)

        subscription, applied = await repository.provision("sub-1", "INSPI1", build, NOW)
        again, reapplied = await repository.provision("sub-1", "INSPI1", build, NOW)

        assert applied and not reapplied
        assert seen == [None]
        assert again == subscription
        row = db.fetch_one("SELECT tier FROM provisionings WHERE order_id = ?", ("INSPI1",))
        assert row["tier"] == "basic"

    @pytest.mark.asyncio
    async def test_failed_build_rolls_back_provisioning_row(self, db):
        repository = SubscriptionRepository(db)

        def broken(current):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await repository.provision("sub-1", "INSPI1", broken, NOW)

        assert not await repository.is_provisioned("INSPI1")
        assert await repository.get("sub-1") is None

    @pytest.mark.asyncio
    async def test_monthly_increment_respects_limit(self, db):
        repository = SubscriptionRepository(db)
        await repository.provision("sub-1", None, active_subscription, NOW)

        first = await repository.increment_monthly_usage("sub-1", NOW)
        second = await repository.increment_monthly_usage("sub-1", NOW)
        third = await repository.increment_monthly_usage("sub-1", NOW)

        assert first.monthly_quota_used == 1
        assert second.monthly_quota_used == 2
        assert second.monthly_quota_remaining == 0
        assert third is None

    @pytest.mark.asyncio
    async def test_separate_connections_share_last_monthly_units(self, db, test_settings):
        """Workers on their own connections never debit past the monthly limit."""
        await SubscriptionRepository(db).provision("sub-1", None, active_subscription, NOW)

        workers = 8
        databases = []
        for _ in range(workers):
            worker_db = LedgerDatabase(db_path=test_settings.storage.db_path)
            await worker_db.initialize()
            databases.append(worker_db)

        barrier = threading.Barrier(workers)

        def debit(worker_db: LedgerDatabase):
            repository = SubscriptionRepository(worker_db)
            barrier.wait()
            subscription = asyncio.run(repository.increment_monthly_usage("sub-1", NOW))
            return subscription.monthly_quota_used if subscription else None

        try:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                outcomes = list(pool.map(debit, databases))
        finally:
            for worker_db in databases:
                worker_db.close()

        assert sorted(o for o in outcomes if o is not None) == [1, 2]
        assert (await SubscriptionRepository(db).get("sub-1")).monthly_quota_used == 2

    @pytest.mark.asyncio
    async def test_monthly_increment_requires_paid_access(self, db):
        repository = SubscriptionRepository(db)
        await repository.provision("sub-1", None, active_subscription, NOW)
        await repository.compare_and_set_status(
            "sub-1", SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, NOW
        )

        assert await repository.increment_monthly_usage("sub-1", NOW) is not None
        assert await repository.increment_monthly_usage("sub-1", NOW + timedelta(days=31)) is None

    @pytest.mark.asyncio
    async def test_compare_and_set_status(self, db):
        repository = SubscriptionRepository(db)
        await repository.provision("sub-1", None, active_subscription, NOW)

        updated = await repository.compare_and_set_status(
            "sub-1",
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
            NOW,
            auto_renew=False,
            cancelled_at=NOW,
        )
        stale = await repository.compare_and_set_status(
            "sub-1", SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD, NOW
        )

        assert updated.status == SubscriptionStatus.CANCELLED
        assert updated.auto_renew is False
        assert updated.cancelled_at == NOW
        assert stale is None

    @pytest.mark.asyncio
    async def test_compare_and_set_rejects_other_columns(self, db):
        repository = SubscriptionRepository(db)

        with pytest.raises(ValueError):
            await repository.compare_and_set_status(
                "sub-1",
                SubscriptionStatus.ACTIVE,
                SubscriptionStatus.CANCELLED,
                NOW,
                monthly_quota_used=0,
            )

    @pytest.mark.asyncio
    async def test_list_due_for_lifecycle(self, db):
        repository = SubscriptionRepository(db)
        await repository.provision("sub-1", None, active_subscription, NOW)

        assert await repository.list_due_for_lifecycle(NOW + timedelta(days=29)) == []
        due = await repository.list_due_for_lifecycle(NOW + timedelta(days=30))
        assert [s.user_id for s in due] == ["sub-1"]


class TestPaymentOrderRepository:
    @pytest.mark.asyncio
    async def test_create_and_get(self, db, count_audit_rows):
        repository = PaymentOrderRepository(db)
        await repository.create(make_order())

        order = await repository.get("INSPI1")

        assert order.status == PaymentStatus.PENDING
        assert order.amount == Decimal("15.00")
        assert order.expires_at == NOW + timedelta(minutes=30)
        assert await repository.exists("INSPI1")
        assert not await repository.exists("INSPI2")
        assert count_audit_rows("CREATE", "INSPI1") == 1

    @pytest.mark.asyncio
    async def test_duplicate_order_id_conflicts(self, db):
        repository = PaymentOrderRepository(db)
        await repository.create(make_order())

        with pytest.raises(ConflictError):
            await repository.create(make_order(user_id="someone-else"))

        assert (await repository.get("INSPI1")).user_id == "payer-1"

    @pytest.mark.asyncio
    async def test_resolve_exactly_once(self, db):
        repository = PaymentOrderRepository(db)
        await repository.create(make_order())

        won = await repository.resolve("INSPI1", PaymentStatus.SUCCESS, NOW, provider_reference="t1")
        lost = await repository.resolve("INSPI1", PaymentStatus.FAILED, NOW, failure_reason="late")

        assert won.status == PaymentStatus.SUCCESS
        assert won.paid_at == NOW
        assert lost is None
        assert (await repository.get("INSPI1")).status == PaymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_resolve_to_pending_is_refused(self, db):
        repository = PaymentOrderRepository(db)
        await repository.create(make_order())

        with pytest.raises(ValueError):
            await repository.resolve("INSPI1", PaymentStatus.PENDING, NOW)

    @pytest.mark.asyncio
    async def test_unprovisioned_successes(self, db):
        orders = PaymentOrderRepository(db)
        subscriptions = SubscriptionRepository(db)
        for order_id in ("INSPI1", "INSPI2", "INSPI3"):
            await orders.create(make_order(order_id))
        await orders.resolve("INSPI1", PaymentStatus.SUCCESS, NOW)
        await orders.resolve("INSPI2", PaymentStatus.SUCCESS, NOW)
        await subscriptions.provision("sub-1", "INSPI2", active_subscription, NOW)

        pending_replay = await orders.list_unprovisioned_successes()

        assert [o.order_id for o in pending_replay] == ["INSPI1"]

    @pytest.mark.asyncio
    async def test_expired_pending(self, db):
        repository = PaymentOrderRepository(db)
        await repository.create(make_order("INSPI1"))
        await repository.create(make_order("INSPI2", expires_at=NOW + timedelta(hours=2)))

        expired = await repository.list_expired_pending(NOW + timedelta(hours=1))

        assert [o.order_id for o in expired] == ["INSPI1"]

    @pytest.mark.asyncio
    async def test_list_for_user(self, db):
        repository = PaymentOrderRepository(db)
        await repository.create(make_order("INSPI1"))
        await repository.create(make_order("INSPI2", created_at=NOW + timedelta(minutes=5)))
        await repository.create(make_order("INSPI3", user_id="other"))

        orders = await repository.list_for_user("payer-1")

        assert [o.order_id for o in orders] == ["INSPI2", "INSPI1"]

    @pytest.mark.asyncio
    async def test_correct_failed_order_to_success(self, db, count_audit_rows):
        repository = PaymentOrderRepository(db)
        await repository.create(make_order())
        await repository.resolve("INSPI1", PaymentStatus.FAILED, NOW, failure_reason="QR code expired")

        later = NOW + timedelta(hours=1)
        corrected = await repository.correct_to_success("INSPI1", later, provider_reference="pi_9")
        again = await repository.correct_to_success("INSPI1", later, provider_reference="pi_10")

        assert corrected.status == PaymentStatus.SUCCESS
        assert corrected.provider_reference == "pi_9"
        assert corrected.paid_at == later
        assert corrected.failure_reason is None
        assert again is None
        assert count_audit_rows("CORRECT", "INSPI1") == 1

    @pytest.mark.asyncio
    async def test_correct_ignores_pending_and_successful_orders(self, db):
        repository = PaymentOrderRepository(db)
        await repository.create(make_order("INSPI1"))
        await repository.create(make_order("INSPI2"))
        await repository.resolve("INSPI2", PaymentStatus.SUCCESS, NOW)

        assert await repository.correct_to_success("INSPI1", NOW) is None
        assert await repository.correct_to_success("INSPI2", NOW) is None
        assert (await repository.get("INSPI1")).status == PaymentStatus.PENDING
