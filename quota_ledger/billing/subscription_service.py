"""
Subscription lifecycle service.

Owns every status transition of a Subscription:
- Provisioning after a successful payment (idempotent per order)
- Admin comps / trials (grant_subscription)
- User-initiated cancellation
- Renewal failure (grace period)
- Time-driven expiry (process_lifecycle)

Monthly counters are reset only by provisioning.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from quota_ledger.billing.plan_catalog import PlanCatalog
from quota_ledger.errors import ConflictError, NotFoundError, ValidationError, require_identifier
from quota_ledger.models.subscription import (
    CancelResult,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    can_transition,
)
from quota_ledger.observability.metrics import track_subscription_transition
from quota_ledger.storage.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionService:
    """
    Subscription state machine over the subscription store.

    All status writes are compare-and-swap on the previous status, so two
    processes racing on the same user cannot both apply a transition.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        catalog: PlanCatalog,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize subscription service.

        Args:
            repository: Subscription store
            catalog: Plan catalog for tier limits and period lengths
            clock: Returns the current time (UTC); injectable for tests
        """
        self.repository = repository
        self.catalog = catalog
        self.clock = clock or _utcnow

    async def get_subscription(self, user_id: str) -> Subscription | None:
        user_id = require_identifier(user_id, "user_id")
        return await self.repository.get(user_id)

    async def provision_quota(
        self,
        user_id: str,
        tier: SubscriptionTier,
        period_days: int | None = None,
        order_id: str | None = None,
    ) -> Subscription:
        """
        Credit a subscription with a full period of its tier's entitlement.

        Resets monthly usage to 0, advances the billing period and sets the
        status to active. When order_id is given the call is idempotent: a
        second provisioning for the same order returns the current
        subscription unchanged.

        Args:
            user_id: Subscriber
            tier: Purchased tier
            period_days: Period length (default: catalog period)
            order_id: Paid order funding this period

        Returns:
            Subscription: The provisioned (or already provisioned) subscription

        Raises:
            ValidationError: If identifiers, tier or period are invalid
        """
        user_id = require_identifier(user_id, "user_id")
        if order_id is not None:
            order_id = require_identifier(order_id, "order_id")
        if period_days is None:
            period_days = self.catalog.period_days
        if period_days < 1:
            raise ValidationError("period_days must be at least 1")

        limits = self.catalog.get_tier_limits(tier)
        now = self.clock()
        previous_status: list[SubscriptionStatus | None] = []

        def build(current: Subscription | None) -> Subscription:
            previous_status.append(current.status if current else None)
            period_anchor = now
            if current is not None and current.current_period_end > now:
                period_anchor = current.current_period_end

            return Subscription(
                user_id=user_id,
                tier=tier,
                status=SubscriptionStatus.ACTIVE,
                monthly_quota_limit=limits.monthly_quota_limit,
                monthly_quota_used=0,
                current_period_start=now,
                current_period_end=period_anchor + timedelta(days=period_days),
                auto_renew=True,
                grace_period_ends_at=None,
                cancelled_at=None,
                created_at=current.created_at if current else now,
                updated_at=now,
            )

        subscription, applied = await self.repository.provision(user_id, order_id, build, now)

        if applied:
            from_status = previous_status[0] if previous_status else None
            track_subscription_transition(
                from_status.value if from_status else None, SubscriptionStatus.ACTIVE.value
            )
            logger.info(
                "Subscription provisioned",
                extra={
                    "user_id": user_id,
                    "order_id": order_id,
                    "tier": tier.value,
                    "monthly_quota_limit": subscription.monthly_quota_limit,
                    "current_period_end": subscription.current_period_end.isoformat(),
                },
            )

        return subscription

    async def grant_subscription(
        self,
        user_id: str,
        tier: SubscriptionTier | None = None,
        period_days: int | None = None,
    ) -> Subscription:
        """
        Force a user into paid metering without a payment (admin comps, trials).

        Not keyed by an order, so every call starts a fresh period.
        """
        tier = tier or self.catalog.default_paid_tier
        logger.info(
            "Granting complimentary subscription",
            extra={"user_id": user_id, "tier": tier.value},
        )
        return await self.provision_quota(user_id, tier, period_days=period_days)

    async def cancel_subscription(self, user_id: str) -> CancelResult:
        """
        Cancel auto-renewal; access continues until the current period ends.

        Args:
            user_id: Subscriber

        Returns:
            CancelResult with the unchanged current_period_end

        Raises:
            NotFoundError: No non-expired subscription exists
            ConflictError: The subscription is in a state that cannot be cancelled
        """
        user_id = require_identifier(user_id, "user_id")
        subscription = await self.repository.get(user_id)

        if subscription is None or subscription.status == SubscriptionStatus.EXPIRED:
            raise NotFoundError(f"No active subscription for user {user_id}")

        if subscription.status == SubscriptionStatus.CANCELLED:
            return CancelResult(
                user_id=user_id,
                status=subscription.status,
                current_period_end=subscription.current_period_end,
            )

        if not can_transition(subscription.status, SubscriptionStatus.CANCELLED):
            raise ConflictError(
                f"Subscription in status {subscription.status.value} cannot be cancelled"
            )

        now = self.clock()
        updated = await self.repository.compare_and_set_status(
            user_id,
            expected=subscription.status,
            target=SubscriptionStatus.CANCELLED,
            now=now,
            auto_renew=False,
            cancelled_at=now,
        )

        if updated is None:
            # Lost a race; a concurrent cancel is fine, anything else is not
            current = await self.repository.get(user_id)
            if current is not None and current.status == SubscriptionStatus.CANCELLED:
                updated = current
            else:
                raise ConflictError(f"Subscription for user {user_id} changed during cancellation")
        else:
            track_subscription_transition(
                subscription.status.value, SubscriptionStatus.CANCELLED.value
            )
            logger.info(
                "Subscription cancelled",
                extra={
                    "user_id": user_id,
                    "current_period_end": updated.current_period_end.isoformat(),
                },
            )

        return CancelResult(
            user_id=user_id,
            status=updated.status,
            current_period_end=updated.current_period_end,
        )

    async def mark_renewal_failed(self, user_id: str) -> Subscription | None:
        """
        Move an active subscription into its grace period after a failed renewal.

        Returns:
            The subscription in grace_period, or None if it was not active
        """
        user_id = require_identifier(user_id, "user_id")
        subscription = await self.repository.get(user_id)
        if subscription is None:
            raise NotFoundError(f"No subscription for user {user_id}")

        if subscription.status == SubscriptionStatus.GRACE_PERIOD:
            return subscription

        if subscription.status != SubscriptionStatus.ACTIVE:
            logger.info(
                "Renewal failure ignored for non-active subscription",
                extra={"user_id": user_id, "status": subscription.status.value},
            )
            return None

        return await self._enter_grace_period(subscription, self.clock())

    async def process_lifecycle(self, now: datetime | None = None) -> dict[str, int]:
        """
        Apply the time-driven transitions to every due subscription.

        - cancelled -> expired once current_period_end has passed
        - grace_period -> expired once grace_period_ends_at has passed
        - active -> grace_period once current_period_end passes without renewal

        Args:
            now: Evaluation time (default: clock)

        Returns:
            dict: Count of subscriptions moved into each target status
        """
        now = now or self.clock()
        counts = {SubscriptionStatus.EXPIRED.value: 0, SubscriptionStatus.GRACE_PERIOD.value: 0}

        for subscription in await self.repository.list_due_for_lifecycle(now):
            if subscription.status == SubscriptionStatus.ACTIVE:
                updated = await self._enter_grace_period(subscription, now)
            else:
                updated = await self.repository.compare_and_set_status(
                    subscription.user_id,
                    expected=subscription.status,
                    target=SubscriptionStatus.EXPIRED,
                    now=now,
                    auto_renew=False,
                )
                if updated is not None:
                    track_subscription_transition(
                        subscription.status.value, SubscriptionStatus.EXPIRED.value
                    )
                    logger.info(
                        "Subscription expired",
                        extra={
                            "user_id": subscription.user_id,
                            "from_status": subscription.status.value,
                        },
                    )

            if updated is not None:
                counts[updated.status.value] += 1

        return counts

    async def _enter_grace_period(
        self, subscription: Subscription, now: datetime
    ) -> Subscription | None:
        anchor = max(now, subscription.current_period_end)
        grace_ends = anchor + timedelta(days=self.catalog.grace_period_days)

        updated = await self.repository.compare_and_set_status(
            subscription.user_id,
            expected=SubscriptionStatus.ACTIVE,
            target=SubscriptionStatus.GRACE_PERIOD,
            now=now,
            grace_period_ends_at=grace_ends,
        )
        if updated is not None:
            track_subscription_transition(
                SubscriptionStatus.ACTIVE.value, SubscriptionStatus.GRACE_PERIOD.value
            )
            logger.warning(
                "Subscription entered grace period",
                extra={
                    "user_id": subscription.user_id,
                    "grace_period_ends_at": grace_ends.isoformat(),
                },
            )
        return updated
