"""
Payment order models and the provider callback wire contract.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from quota_ledger.models.subscription import SubscriptionTier

# Failure reason for orders whose presentment window closed unpaid. Such an
# order was abandoned, not declined, and may still be paid late.
ORDER_EXPIRED_REASON = "QR code expired"


class PaymentType(str, Enum):
    INITIAL = "initial"
    RENEWAL = "renewal"


class PaymentStatus(str, Enum):
    """Order status. PENDING resolves exactly once to SUCCESS or FAILED."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_resolved(self) -> bool:
        return self != PaymentStatus.PENDING


class PaymentOrder(BaseModel):
    """Append-biased payment ledger row, keyed by order_id."""

    order_id: str = Field(..., min_length=1, max_length=64)
    user_id: str = Field(..., min_length=1, max_length=128)
    type: PaymentType
    tier: SubscriptionTier
    status: PaymentStatus = Field(default=PaymentStatus.PENDING)
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(default="CNY")

    presentment_url: str | None = Field(default=None)
    provider_reference: str | None = Field(default=None)
    failure_reason: str | None = Field(default=None)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = Field(default=None)
    paid_at: datetime | None = Field(default=None)
    resolved_at: datetime | None = Field(default=None)


class CreateOrderRequest(BaseModel):
    """Inbound order creation request (the payer comes from the resolved user id)."""

    type: PaymentType = Field(default=PaymentType.INITIAL)
    tier: SubscriptionTier | None = Field(
        default=None, description="Tier to purchase (defaults to the configured paid tier)"
    )


class CreateOrderResult(BaseModel):
    order_id: str
    qr_code_url: str
    amount: Decimal
    currency: str
    expires_at: datetime


class PaymentCallback(BaseModel):
    """
    Provider callback payload.

    The camelCase field names are the provider-facing wire contract and must
    stay stable.
    """

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1, max_length=64)
    provider_reference: str | None = Field(default=None, alias="providerReference")
    status: PaymentStatus
    paid_at: datetime | None = Field(default=None, alias="paidAt")
    failure_reason: str | None = Field(default=None, alias="failureReason")

    @field_validator("status")
    @classmethod
    def validate_resolved_status(cls, v: PaymentStatus) -> PaymentStatus:
        if not v.is_resolved:
            raise ValueError("callback status must be success or failed")
        return v
