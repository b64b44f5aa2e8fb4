"""
Quota check-and-consume service.

Every privileged action calls check_and_consume() once. The decision and the
debit are a single conditional store update, so concurrent requests for the
same user are linearized by the database:

- Free tier: per-day counter per quota type, keyed on the calendar day in the
  billing timezone (no reset job; a new day is a new record)
- Paid tier: one monthly pool on the Subscription, reset only by provisioning

Exhaustion is reported as a denied QuotaResult, never raised.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, tzinfo

from quota_ledger.billing.plan_catalog import PlanCatalog
from quota_ledger.billing.subscription_service import SubscriptionService
from quota_ledger.errors import ValidationError, require_identifier
from quota_ledger.models.subscription import Subscription, SubscriptionTier
from quota_ledger.models.usage import (
    DailyUsage,
    QuotaPeriod,
    QuotaResult,
    QuotaStatus,
    QuotaType,
)
from quota_ledger.observability.metrics import track_quota_decision
from quota_ledger.storage.subscription_repository import SubscriptionRepository
from quota_ledger.storage.usage_repository import UsageRecordRepository

logger = logging.getLogger(__name__)

# User-facing denial reasons
DAILY_EXHAUSTED_REASON = "今日免费额度已用尽，请明天再来或升级订阅"
MONTHLY_EXHAUSTED_REASON = "本月订阅额度已用尽，请续费或等待下个计费周期"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class QuotaService:
    """
    Admit/deny gate in front of the generation engine.

    Metering mode is decided per call from the subscription record: paid
    access means monthly metering, anything else is the free daily tier.
    """

    def __init__(
        self,
        usage_repository: UsageRecordRepository,
        subscription_repository: SubscriptionRepository,
        subscription_service: SubscriptionService,
        catalog: PlanCatalog,
        billing_tz: tzinfo,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize quota service.

        Args:
            usage_repository: Free-tier daily counters
            subscription_repository: Monthly counters
            subscription_service: Lifecycle owner (used for comps)
            catalog: Plan catalog for daily limits
            billing_tz: Timezone whose calendar day keys the daily counters
            clock: Returns the current time (UTC); injectable for tests
        """
        self.usage_repository = usage_repository
        self.subscription_repository = subscription_repository
        self.subscription_service = subscription_service
        self.catalog = catalog
        self.billing_tz = billing_tz
        self.clock = clock or _utcnow

    async def check_and_consume(
        self, user_id: str, quota_type: QuotaType | str = QuotaType.CREATE
    ) -> QuotaResult:
        """
        Decide whether the user may perform one action and debit it if so.

        Args:
            user_id: Already-authenticated user id
            quota_type: Kind of action (selects the free-tier daily counter)

        Returns:
            QuotaResult: allowed with remaining after the debit, or denied
            with a reason (remaining=0 alone does not mean denial)

        Raises:
            ValidationError: If user_id or quota_type is malformed
        """
        user_id = require_identifier(user_id, "user_id")
        quota_type = self._parse_quota_type(quota_type)
        now = self.clock()

        subscription = await self.subscription_repository.get(user_id)
        if subscription is not None and subscription.has_paid_access(now):
            result = await self._consume_monthly(user_id, now)
            if result is not None:
                track_quota_decision(result.quota_type.value, quota_type.value, result.allowed)
                return result

            logger.info(
                "Paid access lapsed during consume, falling back to daily quota",
                extra={"user_id": user_id},
            )

        result = await self._consume_daily(user_id, quota_type, now)
        track_quota_decision(result.quota_type.value, quota_type.value, result.allowed)
        return result

    async def create_subscription(
        self, user_id: str, tier: SubscriptionTier | None = None
    ) -> Subscription:
        """
        Put a user on paid metering without a completed payment.

        Used for admin comps and free trials: status active, used 0,
        remaining equal to the tier's limit.
        """
        return await self.subscription_service.grant_subscription(user_id, tier)

    async def get_quota_status(self, user_id: str) -> QuotaStatus:
        """Read-only snapshot of the user's current counters."""
        user_id = require_identifier(user_id, "user_id")
        now = self.clock()

        subscription = await self.subscription_repository.get(user_id)
        if subscription is not None and subscription.has_paid_access(now):
            return QuotaStatus(
                user_id=user_id,
                tier=subscription.tier,
                quota_type=QuotaPeriod.MONTHLY,
                monthly_quota_limit=subscription.monthly_quota_limit,
                monthly_quota_used=subscription.monthly_quota_used,
                monthly_quota_remaining=subscription.monthly_quota_remaining,
                current_period_end=subscription.current_period_end,
            )

        day = self._billing_day(now)
        counts = {
            record.quota_type: record.count
            for record in await self.usage_repository.get_records(user_id, day)
        }
        daily = []
        for quota_type in QuotaType:
            limit = self.catalog.get_daily_limit(quota_type)
            used = counts.get(quota_type, 0)
            daily.append(
                DailyUsage(
                    quota_type=quota_type,
                    used=used,
                    limit=limit,
                    remaining=max(limit - used, 0),
                )
            )

        return QuotaStatus(
            user_id=user_id,
            tier=SubscriptionTier.FREE,
            quota_type=QuotaPeriod.DAILY,
            daily=daily,
        )

    async def _consume_monthly(self, user_id: str, now: datetime) -> QuotaResult | None:
        """Debit the monthly pool; None means paid access is gone."""
        updated = await self.subscription_repository.increment_monthly_usage(user_id, now)
        if updated is not None:
            return QuotaResult(
                allowed=True,
                quota_type=QuotaPeriod.MONTHLY,
                remaining=updated.monthly_quota_remaining,
                limit=updated.monthly_quota_limit,
            )

        current = await self.subscription_repository.get(user_id)
        if current is None or not current.has_paid_access(now):
            return None

        logger.info(
            "Monthly quota exhausted",
            extra={
                "user_id": user_id,
                "monthly_quota_limit": current.monthly_quota_limit,
                "current_period_end": current.current_period_end.isoformat(),
            },
        )
        return QuotaResult(
            allowed=False,
            quota_type=QuotaPeriod.MONTHLY,
            remaining=current.monthly_quota_remaining,
            limit=current.monthly_quota_limit,
            reason=MONTHLY_EXHAUSTED_REASON,
        )

    async def _consume_daily(
        self, user_id: str, quota_type: QuotaType, now: datetime
    ) -> QuotaResult:
        limit = self.catalog.get_daily_limit(quota_type)
        day = self._billing_day(now)

        count = await self.usage_repository.increment_if_below(user_id, quota_type, day, limit)
        if count is None:
            logger.info(
                "Daily free quota exhausted",
                extra={"user_id": user_id, "quota_type": quota_type.value, "limit": limit},
            )
            return QuotaResult(
                allowed=False,
                quota_type=QuotaPeriod.DAILY,
                remaining=0,
                limit=limit,
                reason=DAILY_EXHAUSTED_REASON,
            )

        return QuotaResult(
            allowed=True,
            quota_type=QuotaPeriod.DAILY,
            remaining=max(limit - count, 0),
            limit=limit,
        )

    def _billing_day(self, now: datetime):
        return now.astimezone(self.billing_tz).date()

    @staticmethod
    def _parse_quota_type(value: QuotaType | str) -> QuotaType:
        if isinstance(value, QuotaType):
            return value
        try:
            return QuotaType(value)
        except ValueError as e:
            raise ValidationError(f"Unknown quota type: {value}") from e
