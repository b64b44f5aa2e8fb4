"""
Usage metering models.

Free-tier users are metered by per-day UsageRecords; paid users by the
monthly counters on their Subscription. QuotaResult is what the generation
engine branches on.
"""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from quota_ledger.models.subscription import SubscriptionTier


class QuotaType(str, Enum):
    """Metered action kinds (free-tier daily counters are kept per kind)."""

    CREATE = "create"
    REUSE = "reuse"
    EXPORT = "export"
    GRAPH_NODES = "graph_nodes"


class QuotaPeriod(str, Enum):
    """Which counter a decision was made against."""

    DAILY = "daily"
    MONTHLY = "monthly"


class UsageRecord(BaseModel):
    """One counter per (user, quota type, calendar day)."""

    user_id: str = Field(..., min_length=1, max_length=128)
    quota_type: QuotaType
    date: date
    count: int = Field(default=0, ge=0)


class QuotaResult(BaseModel):
    """
    Admit/deny decision for a single privileged action.

    remaining=0 with allowed=True is the last successful consumption;
    denial is always accompanied by a reason.
    """

    allowed: bool
    quota_type: QuotaPeriod
    remaining: int = Field(..., ge=0)
    limit: int = Field(..., ge=0)
    reason: str | None = None

    @model_validator(mode="after")
    def require_reason_on_denial(self) -> "QuotaResult":
        if not self.allowed and not self.reason:
            raise ValueError("reason is required when allowed is False")
        return self


class DailyUsage(BaseModel):
    """Today's counter for one quota type."""

    quota_type: QuotaType
    used: int
    limit: int
    remaining: int


class QuotaStatus(BaseModel):
    """Read-only view of a user's current metering state."""

    user_id: str
    tier: SubscriptionTier
    quota_type: QuotaPeriod
    daily: list[DailyUsage] = Field(default_factory=list)
    monthly_quota_limit: int | None = None
    monthly_quota_used: int | None = None
    monthly_quota_remaining: int | None = None
    current_period_end: datetime | None = None
