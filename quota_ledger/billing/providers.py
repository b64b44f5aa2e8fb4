"""
Payment provider clients.

PaymentGateway talks to the provider only through PaymentProviderClient:
- create_remote_order(): obtain a presentment URL (QR code) for a new order
- parse_callback(): authenticate a raw provider callback and translate it
  into the PaymentCallback wire shape

Two implementations, selected once at startup by PAYMENT_PROVIDER:
- sandbox: deterministic mock URLs, HMAC-signed JSON callbacks
- live: Stripe Checkout Sessions and Stripe webhook events
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from urllib.parse import urlencode

import pydantic
import stripe

from quota_ledger.config import PaymentConfig, Settings, StripeConfig
from quota_ledger.errors import ProviderError, ValidationError
from quota_ledger.models.payment import ORDER_EXPIRED_REASON, PaymentCallback, PaymentStatus
from quota_ledger.resilience.circuit_breakers import (
    PaymentCircuitBreakerError,
    call_with_payment_breaker,
)
from quota_ledger.webhooks.signing import SIGNATURE_HEADER, TIMESTAMP_HEADER, CallbackSigner

logger = logging.getLogger(__name__)

# Stripe accepts a Checkout Session expires_at between 30 minutes and 24 hours
# after creation; the minimum carries a margin for request latency
STRIPE_SESSION_MIN_TTL = timedelta(minutes=31)
STRIPE_SESSION_MAX_TTL = timedelta(hours=23, minutes=59)


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


class PaymentProviderClient(ABC):
    """Outbound payment provider abstraction."""

    name: str = "abstract"

    @abstractmethod
    async def create_remote_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        expires_at: datetime,
    ) -> str:
        """
        Register an order with the provider.

        Returns:
            str: Presentment URL (QR code target) for the payer

        Raises:
            ProviderError: Provider unreachable or response unusable
        """

    @abstractmethod
    def parse_callback(self, body: bytes, headers: Mapping[str, str]) -> PaymentCallback | None:
        """
        Authenticate and translate a raw provider callback.

        Returns:
            PaymentCallback, or None for events that do not resolve an order

        Raises:
            ValidationError: Bad signature or malformed payload
        """


class SandboxPaymentProvider(PaymentProviderClient):
    """
    Mock provider for development and tests.

    Callbacks are posted in the wire shape itself. When a callback secret is
    configured they must carry a valid X-Inspi-Signature.
    """

    name = "sandbox"

    def __init__(self, config: PaymentConfig):
        self.config = config
        self.signer = CallbackSigner(config.callback_secret) if config.callback_secret else None

    async def create_remote_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        expires_at: datetime,
    ) -> str:
        query = urlencode({"orderId": order_id})
        url = f"{self.config.sandbox_base_url.rstrip('/')}/mock?{query}"

        logger.debug(
            "Sandbox order registered",
            extra={"order_id": order_id, "amount": str(amount), "currency": currency},
        )
        return url

    def parse_callback(self, body: bytes, headers: Mapping[str, str]) -> PaymentCallback | None:
        if self.signer is not None:
            self._verify(body, _lower_keys(headers))

        try:
            return PaymentCallback.model_validate_json(body)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Malformed callback payload: {e.error_count()} error(s)") from e

    def _verify(self, body: bytes, headers: dict[str, str]) -> None:
        signature = headers.get(SIGNATURE_HEADER.lower())
        timestamp = headers.get(TIMESTAMP_HEADER.lower())
        if not signature or not timestamp:
            raise ValidationError("Missing callback signature headers")

        try:
            valid = self.signer.verify_signature(body, signature, int(timestamp))
        except ValueError as e:
            raise ValidationError("Invalid callback signature") from e

        if not valid:
            raise ValidationError("Invalid callback signature")


class StripePaymentProvider(PaymentProviderClient):
    """
    Live provider backed by Stripe Checkout.

    One Checkout Session per order, linked by client_reference_id. Webhook
    events are verified with the Stripe SDK and mapped onto the wire shape.
    """

    name = "live"

    SUCCESS_EVENTS = {
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    }
    FAILURE_EVENTS = {
        "checkout.session.expired",
        "checkout.session.async_payment_failed",
    }

    def __init__(self, config: StripeConfig):
        """
        Initialize Stripe provider.

        Args:
            config: Stripe configuration
        """
        self.config = config

        if config.api_key:
            stripe.api_key = config.api_key
            logger.info("Stripe payment provider initialized")
        else:
            logger.warning("Stripe API key not configured - live orders will fail")

    async def create_remote_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        expires_at: datetime,
    ) -> str:
        if not self.config.is_configured:
            raise ProviderError("Stripe not configured")

        try:
            session = await asyncio.to_thread(
                call_with_payment_breaker,
                self._create_checkout_session,
                order_id,
                amount,
                currency,
                description,
                self.session_expiry(expires_at),
            )
        except PaymentCircuitBreakerError as e:
            raise ProviderError(str(e)) from e
        except stripe.StripeError as e:
            logger.error(
                "Failed to create Stripe checkout session",
                extra={"order_id": order_id, "error": str(e)},
            )
            raise ProviderError(f"Failed to create checkout session: {e}") from e

        url = session["url"] if session else None
        if not url:
            raise ProviderError("Stripe returned a checkout session without a URL")

        logger.info(
            "Created Stripe checkout session",
            extra={"order_id": order_id, "stripe_session_id": session["id"]},
        )
        return url

    @staticmethod
    def session_expiry(expires_at: datetime, now: datetime | None = None) -> int:
        """Order expiry clamped into the window Stripe accepts, as a unix timestamp."""
        now = now or datetime.now(UTC)
        expiry = min(max(expires_at, now + STRIPE_SESSION_MIN_TTL), now + STRIPE_SESSION_MAX_TTL)
        return int(expiry.timestamp())

    def _create_checkout_session(
        self, order_id: str, amount: Decimal, currency: str, description: str, expires_at: int
    ):
        # Stripe amounts are integer minor units
        unit_amount = int((amount * 100).to_integral_value())
        return stripe.checkout.Session.create(
            mode="payment",
            client_reference_id=order_id,
            payment_method_types=self.config.payment_method_list,
            line_items=[
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": unit_amount,
                        "product_data": {"name": description},
                    },
                    "quantity": 1,
                }
            ],
            success_url=self.config.success_url,
            cancel_url=self.config.cancel_url,
            metadata={"order_id": order_id},
            expires_at=expires_at,
        )

    def parse_callback(self, body: bytes, headers: Mapping[str, str]) -> PaymentCallback | None:
        if not self.config.webhook_secret:
            raise ValidationError("Webhook secret not configured")

        signature = _lower_keys(headers).get("stripe-signature", "")
        try:
            event = stripe.Webhook.construct_event(body, signature, self.config.webhook_secret)
        except ValueError as e:
            raise ValidationError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise ValidationError("Invalid signature") from e

        return self.translate_event(event)

    def translate_event(self, event) -> PaymentCallback | None:
        """Map a verified Stripe event onto the callback wire shape."""
        event_type = event["type"]
        session = event["data"]["object"]

        if event_type in self.SUCCESS_EVENTS:
            # completed fires before funds settle for delayed payment methods
            if session.get("payment_status") not in ("paid", "no_payment_required"):
                logger.info(
                    "Checkout completed with payment still processing",
                    extra={"event_id": event["id"], "stripe_session_id": session.get("id")},
                )
                return None
            status = PaymentStatus.SUCCESS
            failure_reason = None
        elif event_type in self.FAILURE_EVENTS:
            status = PaymentStatus.FAILED
            # An expired session was abandoned unpaid, nothing was declined
            failure_reason = (
                ORDER_EXPIRED_REASON if event_type == "checkout.session.expired" else event_type
            )
        else:
            logger.debug("Ignoring Stripe event", extra={"event_type": event_type})
            return None

        metadata = session.get("metadata") or {}
        order_id = session.get("client_reference_id") or metadata.get("order_id")
        if not order_id:
            raise ValidationError(f"Stripe event {event['id']} carries no order id")

        created = event.get("created")
        return PaymentCallback(
            order_id=order_id,
            provider_reference=session.get("payment_intent") or session.get("id"),
            status=status,
            paid_at=datetime.fromtimestamp(created, UTC)
            if created and status == PaymentStatus.SUCCESS
            else None,
            failure_reason=failure_reason,
        )


def get_payment_provider(settings: Settings) -> PaymentProviderClient:
    """
    Build the provider client selected by configuration.

    Args:
        settings: Application settings

    Returns:
        PaymentProviderClient: sandbox or live implementation
    """
    if settings.payment.provider == "live":
        return StripePaymentProvider(settings.stripe)
    return SandboxPaymentProvider(settings.payment)
