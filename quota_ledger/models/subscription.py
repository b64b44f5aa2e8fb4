"""
Subscription models and lifecycle state machine.

    active ──cancel──────────▶ cancelled ──period end──▶ expired
      │  ▲                                                  │
      │  └──renewal paid── grace_period ──window elapsed──▶ ┘
      └──renewal failed──────────▲

Provisioning after a successful payment is the only way back to active
(including from expired, which means re-subscribing).
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field


class SubscriptionTier(str, Enum):
    """Plan tier. FREE is metered by daily usage records, not by a subscription."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ADMIN = "admin"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"


# Non-payment transitions. Provisioning may enter ACTIVE from any state.
ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.CANCELLED, SubscriptionStatus.GRACE_PERIOD}
    ),
    SubscriptionStatus.CANCELLED: frozenset({SubscriptionStatus.EXPIRED}),
    SubscriptionStatus.GRACE_PERIOD: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED}
    ),
    SubscriptionStatus.EXPIRED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    """Check whether a non-payment status transition is permitted."""
    return target in ALLOWED_TRANSITIONS[current]


class Subscription(BaseModel):
    """
    Per-user subscription record (singleton per user).

    monthly_quota_used may reach monthly_quota_limit exactly; the store
    refuses any debit that would exceed it.
    """

    user_id: str = Field(..., min_length=1, max_length=128)
    tier: SubscriptionTier
    status: SubscriptionStatus

    monthly_quota_limit: int = Field(default=0, ge=0)
    monthly_quota_used: int = Field(default=0, ge=0)

    current_period_start: datetime
    current_period_end: datetime
    auto_renew: bool = Field(default=True)

    grace_period_ends_at: datetime | None = Field(default=None)
    cancelled_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @computed_field
    @property
    def monthly_quota_remaining(self) -> int:
        return max(self.monthly_quota_limit - self.monthly_quota_used, 0)

    def has_paid_access(self, now: datetime | None = None) -> bool:
        """
        Check whether this subscription meters the user monthly.

        Cancelled subscriptions keep access until the paid period ends.
        """
        now = now or datetime.now(UTC)
        if self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD):
            return True
        if self.status == SubscriptionStatus.CANCELLED:
            return now < self.current_period_end
        return False


class CancelResult(BaseModel):
    """Returned to the caller so it can say "access continues until X"."""

    user_id: str
    status: SubscriptionStatus
    current_period_end: datetime
