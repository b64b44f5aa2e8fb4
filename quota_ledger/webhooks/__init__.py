"""
Payment callback authentication.
"""

from quota_ledger.webhooks.signing import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    CallbackSigner,
)

__all__ = [
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "CallbackSigner",
]
