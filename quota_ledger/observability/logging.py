"""
Structured logging with JSON output for production observability.

Features:
- JSON output for log aggregation (ELK, Loki, CloudWatch)
- Request context propagation (request_id, user_id, trace_id)
- stdlib `logger.info(..., extra={...})` calls rendered with their extra fields
- Redaction of secrets (API keys, signatures, webhook secrets)

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- ProcessorFormatter so stdlib loggers share the structlog pipeline
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Context variables for request-scoped data
# These propagate across async boundaries automatically
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add request context to log events.

    Injects request_id, user_id and trace_id when set. An explicit user_id
    on the event wins over the context value.
    """
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    user_id = user_id_var.get()
    if user_id:
        event_dict.setdefault("user_id", user_id)

    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO 8601 timestamp with microsecond precision.

    Format: 2025-01-15T10:30:45.123456Z
    """
    now = time.time()
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{int((now % 1) * 1000000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service metadata for log aggregation.

    Configured via LOGGING_SERVICE_NAME, LOGGING_SERVICE_VERSION and
    LOGGING_ENVIRONMENT.
    """
    from quota_ledger.config import get_settings

    settings = get_settings()
    event_dict["service"] = settings.logging.service_name
    event_dict["version"] = settings.logging.service_version
    event_dict["environment"] = settings.logging.environment
    return event_dict


SENSITIVE_FIELDS = {
    "api_key",
    "admin_api_key",
    "authorization",
    "secret",
    "callback_secret",
    "webhook_secret",
    "signature",
    "token",
}


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact credentials so they never reach log storage.

    Long values keep a short prefix and suffix for debugging
    (sk_live_abcd...xyz -> sk_live_abcd***xyz); short values are replaced
    entirely.
    """
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_FIELDS:
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 12:
                event_dict[key] = f"{value[:12]}***{value[-3:]}"
            else:
                event_dict[key] = "***REDACTED***"

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add exception_type and exception_message for error aggregation.
    """
    exc_info = event_dict.get("exc_info")
    if exc_info and isinstance(exc_info, tuple) and len(exc_info) == 3:
        exc_type, exc_value, _ = exc_info
        event_dict["exception_type"] = exc_type.__name__ if exc_type else "Unknown"
        event_dict["exception_message"] = str(exc_value) if exc_value else ""

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structured logging for the service and its scripts.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)

    JSON (production):
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Payment order created",
          "service": "quota-ledger",
          "request_id": "req_abc123",
          "user_id": "u_42",
          "order_id": "INSPI1736937045123042137"
        }
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    if json_output:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colorized)

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdlib loggers (logging.getLogger(__name__)) go through the same chain;
    # ExtraAdder lifts their extra={...} into the event
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[structlog.stdlib.ExtraAdder()] + shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, log_level.upper()))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Reconciliation run complete", replayed=3)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Generates request_id and trace_id unless given, and propagates user_id.

    Usage:
        with RequestContext(user_id=user_id):
            logger.info("Processing request")  # request_id auto-injected
    """

    def __init__(
        self,
        user_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.user_id = user_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"

        self._request_id_token = None
        self._user_id_token = None
        self._trace_id_token = None

    def __enter__(self):
        self._request_id_token = request_id_var.set(self.request_id)
        # Always set user_id (even if None) so it is reliably reset on exit
        self._user_id_token = user_id_var.set(self.user_id)
        self._trace_id_token = trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._request_id_token is not None:
            request_id_var.reset(self._request_id_token)
        if self._user_id_token is not None:
            user_id_var.reset(self._user_id_token)
        if self._trace_id_token is not None:
            trace_id_var.reset(self._trace_id_token)


class OperationContext:
    """
    Context manager for operation-level logging with timing.

    Usage:
        with OperationContext("reconciliation_run"):
            await job.run_once()
        # Logs: "reconciliation_run completed" with latency_ms
    """

    def __init__(self, operation: str, **kwargs):
        self.operation = operation
        self.context = kwargs
        self.logger = get_logger(f"operation.{operation}")
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.info(
                f"{self.operation} completed",
                latency_ms=round(duration_ms, 2),
                **self.context,
            )
        else:
            self.logger.error(
                f"{self.operation} failed",
                latency_ms=round(duration_ms, 2),
                exception_type=exc_type.__name__,
                **self.context,
                exc_info=True,
            )


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_user_id(user_id: str) -> None:
    """Set user ID for current context."""
    user_id_var.set(user_id)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_user_id() -> str | None:
    return user_id_var.get()


def get_trace_id() -> str | None:
    return trace_id_var.get()
