"""
Circuit breaker for the payment provider.

Prevents order creation from piling up behind a provider outage.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if provider recovered, one trial request allowed

Configuration:
- fail_max: Number of failures before opening circuit
- reset_timeout: Seconds circuit stays open before trying half-open

The breaker never retries; callers own retry/backoff.
"""

import logging

from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener

logger = logging.getLogger(__name__)


class PaymentCircuitBreakerError(Exception):
    """Circuit breaker open for payment provider operations."""

    pass


class _StateChangeLogger(CircuitBreakerListener):
    """Logs breaker state changes."""

    def state_change(self, cb: CircuitBreaker, old_state, new_state) -> None:
        new_name = getattr(new_state, "name", str(new_state))
        if new_name == "open":
            logger.error(
                f"Circuit breaker OPENED: {cb.name}",
                extra={
                    "breaker_name": cb.name,
                    "fail_count": cb.fail_counter,
                    "fail_max": cb.fail_max,
                    "state": "OPEN",
                },
            )
        elif new_name == "closed":
            logger.info(
                f"Circuit breaker CLOSED: {cb.name} (provider recovered)",
                extra={"breaker_name": cb.name, "state": "CLOSED"},
            )
        else:
            logger.warning(
                f"Circuit breaker HALF-OPEN: {cb.name} (testing recovery)",
                extra={"breaker_name": cb.name, "state": "HALF_OPEN"},
            )


# Opens after 3 consecutive failures, stays open for 30 seconds
payment_provider_breaker = CircuitBreaker(
    fail_max=3,
    reset_timeout=30,
    name="PaymentProvider",
    listeners=[_StateChangeLogger()],
)


def get_payment_provider_breaker() -> CircuitBreaker:
    """
    Get payment provider circuit breaker instance.

    Returns:
        CircuitBreaker: Configured for blocking provider SDK calls

    Usage:
        breaker = get_payment_provider_breaker()
        session = breaker.call(stripe.checkout.Session.create, ...)
    """
    return payment_provider_breaker


def call_with_payment_breaker(func, *args, **kwargs):
    """
    Run a blocking provider call through the circuit breaker.

    Raises:
        PaymentCircuitBreakerError: If the circuit is open
    """
    try:
        return payment_provider_breaker.call(func, *args, **kwargs)
    except CircuitBreakerError as e:
        logger.warning(
            "Payment provider circuit breaker OPEN - failing fast",
            extra={
                "function": getattr(func, "__name__", repr(func)),
                "state": payment_provider_breaker.current_state,
            },
        )
        raise PaymentCircuitBreakerError(
            f"Payment provider unavailable (circuit breaker open). "
            f"Retry after {payment_provider_breaker.reset_timeout} seconds."
        ) from e


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    payment_provider_breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")
