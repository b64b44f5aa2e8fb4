"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms)
- logging.py: Structured JSON logging with request context
- logging_middleware.py: Per-request logging and metrics
"""

from quota_ledger.observability.logging import (
    OperationContext,
    RequestContext,
    configure_logging,
    get_logger,
)
from quota_ledger.observability.metrics import generate_metrics, track_request

__all__ = [
    "OperationContext",
    "RequestContext",
    "configure_logging",
    "generate_metrics",
    "get_logger",
    "track_request",
]
