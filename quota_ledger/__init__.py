"""
Quota & Subscription Ledger.

Usage metering, subscription lifecycle and payment reconciliation for the
content-generation product.
"""

__version__ = "0.1.0"
