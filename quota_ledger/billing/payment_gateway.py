"""
Payment gateway: order creation and callback reconciliation.

Order flow:
1. create_order() asks the provider for a presentment URL, then persists a
   PENDING order (nothing is persisted if the provider fails)
2. The payer pays out of band; the provider calls back, at least once
3. handle_callback() resolves the order exactly once and, on success,
   provisions the subscription keyed by the order id

A paid order whose provisioning failed is surfaced as ReconciliationError
and later replayed by the reconciliation job. A success callback for an order
that was already failed means the payer was charged anyway: the order is
corrected to SUCCESS and provisioned.
"""

import asyncio
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta

from quota_ledger.billing.plan_catalog import PlanCatalog
from quota_ledger.billing.providers import PaymentProviderClient
from quota_ledger.billing.subscription_service import SubscriptionService
from quota_ledger.config import PaymentConfig
from quota_ledger.errors import (
    ConflictError,
    NotFoundError,
    ProviderError,
    ReconciliationError,
    ValidationError,
    require_identifier,
)
from quota_ledger.models.payment import (
    ORDER_EXPIRED_REASON,
    CreateOrderResult,
    PaymentCallback,
    PaymentOrder,
    PaymentStatus,
    PaymentType,
)
from quota_ledger.models.subscription import Subscription, SubscriptionTier
from quota_ledger.observability.metrics import (
    track_callback,
    track_order_created,
    track_provider_call,
    track_provider_error,
    track_reconciliation_error,
)
from quota_ledger.storage.payment_repository import PaymentOrderRepository

logger = logging.getLogger(__name__)

_ORDER_ID_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PaymentGateway:
    """
    Creates payment orders and reconciles provider callbacks.

    Callback handling is idempotent: the pending -> resolved write is
    conditional on the order still being pending, and provisioning is keyed
    by order id.
    """

    def __init__(
        self,
        repository: PaymentOrderRepository,
        subscription_service: SubscriptionService,
        provider: PaymentProviderClient,
        catalog: PlanCatalog,
        config: PaymentConfig,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize payment gateway.

        Args:
            repository: Payment order store
            subscription_service: Provisioning target for paid orders
            provider: Active payment provider client
            catalog: Plan catalog for prices
            config: Payment configuration (prefix, TTL, timeout)
            clock: Returns the current time (UTC); injectable for tests
        """
        self.repository = repository
        self.subscription_service = subscription_service
        self.provider = provider
        self.catalog = catalog
        self.config = config
        self.clock = clock or _utcnow

    async def create_order(
        self,
        user_id: str,
        type: PaymentType | str = PaymentType.INITIAL,
        tier: SubscriptionTier | str | None = None,
    ) -> CreateOrderResult:
        """
        Create a pending payment order and its presentment URL.

        Args:
            user_id: Paying user
            type: initial or renewal
            tier: Tier being purchased (default: configured paid tier)

        Returns:
            CreateOrderResult: order id, QR code URL, amount and expiry

        Raises:
            ValidationError: Malformed input or non-purchasable tier
            ProviderError: Provider failed or timed out (retryable, nothing persisted)
            ConflictError: Order id collision on insert
        """
        user_id = require_identifier(user_id, "user_id")
        try:
            payment_type = PaymentType(type)
            tier = SubscriptionTier(tier) if tier is not None else self.catalog.default_paid_tier
        except ValueError as e:
            raise ValidationError(str(e)) from e

        amount = self.catalog.get_price(tier)
        order_id = await self._generate_order_id()
        now = self.clock()
        expires_at = now + timedelta(minutes=self.config.order_ttl_minutes)

        presentment_url = await self._call_provider(
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            description=f"Inspi {tier.value} subscription ({payment_type.value})",
            expires_at=expires_at,
        )

        order = PaymentOrder(
            order_id=order_id,
            user_id=user_id,
            type=payment_type,
            tier=tier,
            status=PaymentStatus.PENDING,
            amount=amount,
            currency=self.config.currency,
            presentment_url=presentment_url,
            created_at=now,
            expires_at=expires_at,
        )
        await self.repository.create(order)

        track_order_created(payment_type.value, tier.value, self.provider.name)
        logger.info(
            "Payment order created",
            extra={
                "user_id": user_id,
                "order_id": order_id,
                "type": payment_type.value,
                "tier": tier.value,
                "amount": str(amount),
            },
        )

        return CreateOrderResult(
            order_id=order_id,
            qr_code_url=presentment_url,
            amount=amount,
            currency=order.currency,
            expires_at=expires_at,
        )

    async def handle_callback(self, callback: PaymentCallback) -> bool:
        """
        Apply a provider callback to its order.

        Safe under at-least-once delivery: a callback for an already
        resolved order (including the loser of a concurrent race) returns
        True without mutating anything. The one exception is a success
        callback for a FAILED order, which is corrected and provisioned.

        Args:
            callback: Callback in the wire shape

        Returns:
            bool: True once the callback is accounted for

        Raises:
            NotFoundError: Unknown order id (permanent, do not retry blindly)
            ReconciliationError: Order marked paid but provisioning failed
        """
        order_id = require_identifier(callback.order_id, "order_id")

        order = await self.repository.get(order_id)
        if order is None:
            track_callback("unknown_order")
            logger.warning(
                "Callback for unknown order",
                extra={"order_id": order_id, "provider_reference": callback.provider_reference},
            )
            raise NotFoundError(f"Unknown order {order_id}")

        if order.status == PaymentStatus.FAILED and callback.status == PaymentStatus.SUCCESS:
            return await self._late_success(order, callback)

        if order.status.is_resolved:
            return self._duplicate(order)

        resolved = await self.repository.resolve(
            order_id,
            callback.status,
            now=self.clock(),
            provider_reference=callback.provider_reference,
            paid_at=callback.paid_at,
            failure_reason=callback.failure_reason,
        )
        if resolved is None:
            # A concurrent delivery (or the expiry sweep) resolved it first
            current = await self.repository.get(order_id)
            if current.status == PaymentStatus.FAILED and callback.status == PaymentStatus.SUCCESS:
                return await self._late_success(current, callback)
            return self._duplicate(current)

        if resolved.status == PaymentStatus.SUCCESS:
            await self._provision(resolved)
            track_callback("success")
            logger.info(
                "Payment succeeded and subscription provisioned",
                extra={"user_id": resolved.user_id, "order_id": order_id},
            )
        else:
            track_callback("failed")
            logger.warning(
                "Payment failed",
                extra={
                    "user_id": resolved.user_id,
                    "order_id": order_id,
                    "failure_reason": resolved.failure_reason,
                },
            )
            # An unpaid, expired checkout is not a declined renewal charge
            declined = resolved.failure_reason != ORDER_EXPIRED_REASON
            if resolved.type == PaymentType.RENEWAL and declined:
                await self._renewal_failed(resolved)

        return True

    async def handle_provider_callback(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """
        Authenticate a raw provider callback and apply it.

        Provider events that do not resolve an order are acknowledged and
        ignored.
        """
        callback = self.provider.parse_callback(body, headers)
        if callback is None:
            return True
        return await self.handle_callback(callback)

    async def query_payment_status(self, order_id: str) -> PaymentStatus:
        """Current status of an order. Pure read, used for client polling."""
        return (await self.get_order(order_id)).status

    async def get_order(self, order_id: str) -> PaymentOrder:
        order_id = require_identifier(order_id, "order_id")
        order = await self.repository.get(order_id)
        if order is None:
            raise NotFoundError(f"Unknown order {order_id}")
        return order

    async def replay_provisioning(self, order_id: str) -> Subscription:
        """
        Re-run provisioning for a successful order.

        Idempotent: an order that was already provisioned leaves the
        subscription untouched.

        Raises:
            NotFoundError: Unknown order id
            ConflictError: Order is not in success status
            ReconciliationError: Provisioning failed again
        """
        order = await self.get_order(order_id)
        if order.status != PaymentStatus.SUCCESS:
            raise ConflictError(
                f"Order {order.order_id} is {order.status.value}, only successful orders provision"
            )
        return await self._provision(order)

    async def expire_stale_orders(self, now: datetime | None = None) -> int:
        """
        Fail pending orders whose presentment window has closed.

        Returns:
            int: Number of orders expired by this call
        """
        now = now or self.clock()
        expired = 0
        for order in await self.repository.list_expired_pending(now):
            resolved = await self.repository.resolve(
                order.order_id,
                PaymentStatus.FAILED,
                now=now,
                failure_reason=ORDER_EXPIRED_REASON,
            )
            if resolved is not None:
                expired += 1
                logger.info(
                    "Pending order expired",
                    extra={"user_id": order.user_id, "order_id": order.order_id},
                )
        return expired

    async def _call_provider(
        self,
        order_id: str,
        user_id: str,
        amount,
        description: str,
        expires_at: datetime,
    ) -> str:
        provider = self.provider.name
        started = time.perf_counter()
        try:
            url = await asyncio.wait_for(
                self.provider.create_remote_order(
                    order_id=order_id,
                    amount=amount,
                    currency=self.config.currency,
                    description=description,
                    expires_at=expires_at,
                ),
                timeout=self.config.provider_timeout_seconds,
            )
        except TimeoutError as e:
            track_provider_call(provider, False, time.perf_counter() - started)
            track_provider_error(provider, "timeout")
            logger.error(
                "Payment provider timed out",
                extra={
                    "user_id": user_id,
                    "order_id": order_id,
                    "timeout_seconds": self.config.provider_timeout_seconds,
                },
            )
            raise ProviderError(
                f"Payment provider timed out after {self.config.provider_timeout_seconds}s"
            ) from e
        except ProviderError as e:
            track_provider_call(provider, False, time.perf_counter() - started)
            track_provider_error(provider, "provider_error")
            logger.error(
                "Payment provider rejected order",
                extra={"user_id": user_id, "order_id": order_id, "error": str(e)},
            )
            raise
        except Exception as e:
            track_provider_call(provider, False, time.perf_counter() - started)
            track_provider_error(provider, "unexpected")
            logger.error(
                "Unexpected payment provider failure",
                extra={"user_id": user_id, "order_id": order_id, "error": str(e)},
            )
            raise ProviderError(f"Unexpected payment provider failure: {e}") from e

        track_provider_call(provider, True, time.perf_counter() - started)
        if not url:
            track_provider_error(provider, "empty_url")
            raise ProviderError("Payment provider returned no presentment URL")
        return url

    async def _provision(self, order: PaymentOrder) -> Subscription:
        try:
            return await self.subscription_service.provision_quota(
                order.user_id, order.tier, order_id=order.order_id
            )
        except Exception as e:
            track_reconciliation_error()
            logger.error(
                "Order paid but provisioning failed - needs replay",
                extra={"user_id": order.user_id, "order_id": order.order_id, "error": str(e)},
            )
            raise ReconciliationError(
                f"Order {order.order_id} is paid but provisioning failed: {e}",
                order_id=order.order_id,
                user_id=order.user_id,
            ) from e

    async def _renewal_failed(self, order: PaymentOrder) -> None:
        try:
            await self.subscription_service.mark_renewal_failed(order.user_id)
        except NotFoundError:
            logger.warning(
                "Renewal failed for user without subscription",
                extra={"user_id": order.user_id, "order_id": order.order_id},
            )

    async def _late_success(self, order: PaymentOrder, callback: PaymentCallback) -> bool:
        """
        Correct a failed order that the provider reports as paid.

        The provider captured the money, so the order must not stay failed.
        Provisioning failures surface as ReconciliationError and the order is
        then picked up by the replay sweep like any other paid order.
        """
        track_reconciliation_error()
        logger.error(
            "Success callback for failed order - correcting to success",
            extra={
                "user_id": order.user_id,
                "order_id": order.order_id,
                "failure_reason": order.failure_reason,
                "provider_reference": callback.provider_reference,
            },
        )

        corrected = await self.repository.correct_to_success(
            order.order_id,
            now=self.clock(),
            provider_reference=callback.provider_reference,
            paid_at=callback.paid_at,
        )
        if corrected is None:
            # A concurrent delivery corrected it first
            return self._duplicate(order)

        await self._provision(corrected)
        track_callback("late_success")
        logger.info(
            "Late payment provisioned",
            extra={"user_id": corrected.user_id, "order_id": corrected.order_id},
        )
        return True

    def _duplicate(self, order: PaymentOrder) -> bool:
        track_callback("duplicate")
        logger.info(
            "Duplicate callback for resolved order",
            extra={
                "user_id": order.user_id,
                "order_id": order.order_id,
                "status": order.status.value,
            },
        )
        return True

    async def _generate_order_id(self) -> str:
        """
        Prefix + millisecond timestamp + 6 random digits, e.g. INSPI1700000000000042137.

        The primary key still guards against a collision between two
        processes generating the same candidate.
        """
        for _ in range(_ORDER_ID_ATTEMPTS):
            millis = int(self.clock().timestamp() * 1000)
            candidate = f"{self.config.order_id_prefix}{millis}{secrets.randbelow(10**6):06d}"
            if not await self.repository.exists(candidate):
                return candidate

        raise ConflictError("Could not generate a unique order id")
