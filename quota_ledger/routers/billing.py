"""
Quota, subscription and payment API endpoints.

The router holds no ledger logic: it resolves the caller, hands off to the
ledger services and renders their results. Ledger errors are mapped to HTTP
status codes by the handlers registered in main.py.

Security:
- User id arrives already authenticated from the upstream auth tier (X-User-ID)
- Admin-only endpoints require X-Admin-Key
- Order status is only visible to the order's owner
- Provider callbacks are authenticated by the active provider client
"""

import hmac
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from quota_ledger.config import Settings, get_settings
from quota_ledger.errors import NotFoundError, require_identifier
from quota_ledger.ledger import Ledger, get_ledger
from quota_ledger.models.payment import (
    CreateOrderRequest,
    CreateOrderResult,
    PaymentOrder,
    PaymentStatus,
    PaymentType,
)
from quota_ledger.models.subscription import CancelResult, Subscription, SubscriptionTier
from quota_ledger.models.usage import QuotaResult, QuotaStatus, QuotaType
from quota_ledger.observability.logging import set_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Billing"])


# Request / response models
class ConsumeRequest(BaseModel):
    quota_type: QuotaType = Field(default=QuotaType.CREATE)


class GrantSubscriptionRequest(BaseModel):
    """Admin comp / trial request."""

    user_id: str = Field(..., min_length=1, max_length=128)
    tier: SubscriptionTier | None = Field(default=None)
    period_days: int | None = Field(default=None, ge=1, le=366)


class OrderStatusResponse(BaseModel):
    order_id: str
    status: PaymentStatus
    type: PaymentType
    tier: SubscriptionTier
    paid_at: datetime | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_order(cls, order: PaymentOrder) -> "OrderStatusResponse":
        return cls(
            order_id=order.order_id,
            status=order.status,
            type=order.type,
            tier=order.tier,
            paid_at=order.paid_at,
            expires_at=order.expires_at,
        )


class CallbackAck(BaseModel):
    success: bool


# Dependencies
async def get_user_id(x_user_id: str = Header(...)) -> str:
    """Resolved user id from the auth tier, bound to the log context."""
    user_id = require_identifier(x_user_id, "user_id")
    set_user_id(user_id)
    return user_id


async def verify_admin_key(
    x_admin_key: str = Header(...),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Verify admin API key against ADMIN_API_KEY."""
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin endpoints are disabled (ADMIN_API_KEY not configured)",
        )
    if not hmac.compare_digest(x_admin_key, settings.admin_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
    return True


# Quota endpoints


@router.post("/quota/consume", response_model=QuotaResult, tags=["Quota"])
async def consume_quota(
    request: ConsumeRequest | None = None,
    user_id: str = Depends(get_user_id),
    ledger: Ledger = Depends(get_ledger),
) -> QuotaResult:
    """
    Check and consume one unit of quota.

    Always 200: a denial is a normal result with allowed=false and a reason.
    """
    quota_type = request.quota_type if request else QuotaType.CREATE
    return await ledger.quota_service.check_and_consume(user_id, quota_type)


@router.get("/quota/status", response_model=QuotaStatus, tags=["Quota"])
async def quota_status(
    user_id: str = Depends(get_user_id),
    ledger: Ledger = Depends(get_ledger),
) -> QuotaStatus:
    return await ledger.quota_service.get_quota_status(user_id)


# Subscription endpoints


@router.post(
    "/subscriptions",
    response_model=Subscription,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_admin_key)],
    tags=["Subscriptions"],
)
async def grant_subscription(
    request: GrantSubscriptionRequest,
    ledger: Ledger = Depends(get_ledger),
) -> Subscription:
    """Put a user on paid metering without a payment (admin only)."""
    subscription = await ledger.subscription_service.grant_subscription(
        request.user_id, request.tier, request.period_days
    )
    logger.info(
        "Admin granted subscription",
        extra={"user_id": request.user_id, "tier": subscription.tier.value},
    )
    return subscription


@router.post("/subscriptions/cancel", response_model=CancelResult, tags=["Subscriptions"])
async def cancel_subscription(
    user_id: str = Depends(get_user_id),
    ledger: Ledger = Depends(get_ledger),
) -> CancelResult:
    """Cancel auto-renewal; access continues until current_period_end."""
    return await ledger.subscription_service.cancel_subscription(user_id)


# Payment endpoints


@router.post(
    "/payments/orders",
    response_model=CreateOrderResult,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"],
)
async def create_order(
    request: CreateOrderRequest,
    user_id: str = Depends(get_user_id),
    ledger: Ledger = Depends(get_ledger),
) -> CreateOrderResult:
    return await ledger.gateway.create_order(user_id, request.type, request.tier)


@router.get(
    "/payments/orders",
    response_model=list[OrderStatusResponse],
    tags=["Payments"],
)
async def list_orders(
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(get_user_id),
    ledger: Ledger = Depends(get_ledger),
) -> list[OrderStatusResponse]:
    """The caller's orders, newest first."""
    orders = await ledger.payment_repository.list_for_user(user_id, limit=limit)
    return [OrderStatusResponse.from_order(order) for order in orders]


@router.get(
    "/payments/orders/{order_id}",
    response_model=OrderStatusResponse,
    tags=["Payments"],
)
async def get_order_status(
    order_id: str,
    user_id: str = Depends(get_user_id),
    ledger: Ledger = Depends(get_ledger),
) -> OrderStatusResponse:
    """Poll an order while waiting for the provider callback."""
    order = await ledger.gateway.get_order(order_id)
    if order.user_id != user_id:
        # Same response as a missing order, so ids cannot be probed
        raise NotFoundError(f"Unknown order {order_id}")

    return OrderStatusResponse.from_order(order)


@router.post(
    "/payments/orders/{order_id}/replay",
    response_model=Subscription,
    dependencies=[Depends(verify_admin_key)],
    tags=["Payments"],
)
async def replay_order_provisioning(
    order_id: str,
    ledger: Ledger = Depends(get_ledger),
) -> Subscription:
    """Manually replay provisioning for a paid order (admin only)."""
    return await ledger.gateway.replay_provisioning(order_id)


@router.post("/payments/callback", response_model=CallbackAck, tags=["Payments"])
async def payment_callback(
    request: Request,
    ledger: Ledger = Depends(get_ledger),
) -> CallbackAck:
    """
    Provider callback endpoint.

    Returns success for duplicates so the provider stops retrying.
    """
    body = await request.body()
    success = await ledger.gateway.handle_provider_callback(body, request.headers)
    return CallbackAck(success=success)
