"""
Prometheus metrics for the ledger.

Metrics tracked:
- Request latency (histogram) and count per endpoint
- Quota decisions (counter) by metering mode and outcome
- Payment orders created and callbacks processed (counters)
- Provider errors and reconciliation errors (counters)
- Subscription state transitions (counter)
- Provider call latency (histogram)

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
- User ids are never used as labels (unbounded cardinality)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "quota_ledger_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.001,  # 1ms
        0.005,  # 5ms
        0.010,  # 10ms
        0.025,  # 25ms
        0.050,  # 50ms
        0.100,  # 100ms
        0.250,  # 250ms
        0.500,  # 500ms
        1.000,  # 1s
        5.000,  # 5s (provider timeout)
    ),
)

http_requests_total = Counter(
    "quota_ledger_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

errors_total = Counter(
    "quota_ledger_errors_total",
    "Total errors by type",
    labelnames=["error_type", "endpoint"],
)

# ============================================================================
# QUOTA METRICS
# ============================================================================

quota_decisions_total = Counter(
    "quota_ledger_quota_decisions_total",
    "Quota check-and-consume decisions",
    labelnames=["period", "quota_type", "allowed"],
)

# ============================================================================
# PAYMENT METRICS
# ============================================================================

payment_orders_created_total = Counter(
    "quota_ledger_payment_orders_created_total",
    "Payment orders persisted after a successful provider call",
    labelnames=["type", "tier", "provider"],
)

payment_callbacks_total = Counter(
    "quota_ledger_payment_callbacks_total",
    "Payment callbacks by outcome",
    # outcome: success, failed, duplicate, unknown_order
    labelnames=["outcome"],
)

provider_errors_total = Counter(
    "quota_ledger_provider_errors_total",
    "Payment provider failures during order creation",
    labelnames=["provider", "reason"],
)

provider_call_duration_seconds = Histogram(
    "quota_ledger_provider_call_duration_seconds",
    "Payment provider call latency",
    labelnames=["provider", "success"],
    buckets=(0.010, 0.050, 0.100, 0.250, 0.500, 1.000, 2.500, 5.000, 10.000),
)

reconciliation_errors_total = Counter(
    "quota_ledger_reconciliation_errors_total",
    "Orders marked paid whose provisioning failed",
)

reconciliation_replays_total = Counter(
    "quota_ledger_reconciliation_replays_total",
    "Provisioning replays performed by the reconciliation job",
    labelnames=["success"],
)

# ============================================================================
# SUBSCRIPTION METRICS
# ============================================================================

subscription_transitions_total = Counter(
    "quota_ledger_subscription_transitions_total",
    "Subscription status transitions",
    labelnames=["from_status", "to_status"],
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: API endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_error(error_type: str, endpoint: str) -> None:
    """
    Track error occurrence.

    Args:
        error_type: Error class name (ValidationError, ProviderError, ...)
        endpoint: API endpoint where error occurred
    """
    errors_total.labels(error_type=error_type, endpoint=endpoint).inc()


def track_quota_decision(period: str, quota_type: str, allowed: bool) -> None:
    quota_decisions_total.labels(
        period=period, quota_type=quota_type, allowed=str(allowed).lower()
    ).inc()


def track_order_created(order_type: str, tier: str, provider: str) -> None:
    payment_orders_created_total.labels(type=order_type, tier=tier, provider=provider).inc()


def track_callback(outcome: str) -> None:
    """
    Track a processed payment callback.

    Args:
        outcome: success, failed, late_success, duplicate or unknown_order
    """
    payment_callbacks_total.labels(outcome=outcome).inc()


def track_provider_call(provider: str, success: bool, duration_seconds: float) -> None:
    provider_call_duration_seconds.labels(
        provider=provider, success=str(success).lower()
    ).observe(duration_seconds)


def track_provider_error(provider: str, reason: str) -> None:
    provider_errors_total.labels(provider=provider, reason=reason).inc()


def track_reconciliation_error() -> None:
    reconciliation_errors_total.inc()


def track_reconciliation_replay(success: bool) -> None:
    reconciliation_replays_total.labels(success=str(success).lower()).inc()


def track_subscription_transition(from_status: str | None, to_status: str) -> None:
    subscription_transitions_total.labels(
        from_status=from_status or "none", to_status=to_status
    ).inc()


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
