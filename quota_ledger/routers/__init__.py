"""
API routers for the ledger service.

Routers:
- billing: Quota, subscription and payment endpoints
"""

from quota_ledger.routers.billing import router as billing_router

__all__ = ["billing_router"]
