"""
Error taxonomy for the ledger.

Quota exhaustion is deliberately absent: it is an expected outcome and is
returned as a denied QuotaResult, not raised.
"""


class LedgerError(Exception):
    """Base exception for ledger errors."""

    retryable: bool = False


class ValidationError(LedgerError):
    """Missing or malformed input, rejected before any store access."""

    pass


class NotFoundError(LedgerError):
    """Target subscription or order does not exist."""

    pass


class ConflictError(LedgerError):
    """A conditional store write lost its race."""

    pass


class ProviderError(LedgerError):
    """Payment provider unreachable or returned an unexpected response."""

    retryable = True


class ReconciliationError(LedgerError):
    """
    Order was marked paid but the subscription could not be provisioned.

    Carries the identifiers needed for manual or scheduled replay.
    """

    retryable = True

    def __init__(self, message: str, order_id: str, user_id: str):
        super().__init__(message)
        self.order_id = order_id
        self.user_id = user_id


def require_identifier(value: str | None, name: str) -> str:
    """Return a stripped identifier or raise ValidationError."""
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    value = value.strip()
    if len(value) > 128:
        raise ValidationError(f"{name} is too long")
    return value
