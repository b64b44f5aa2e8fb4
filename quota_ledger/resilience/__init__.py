"""
Resilience patterns for external dependencies.

Circuit breakers prevent cascade failures when dependencies fail.
"""

from quota_ledger.resilience.circuit_breakers import (
    PaymentCircuitBreakerError,
    call_with_payment_breaker,
    get_payment_provider_breaker,
    reset_all_breakers,
)

__all__ = [
    "PaymentCircuitBreakerError",
    "call_with_payment_breaker",
    "get_payment_provider_breaker",
    "reset_all_breakers",
]
