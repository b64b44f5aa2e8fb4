"""
FastAPI application for the Quota & Subscription Ledger.

Provides REST API for:
- Quota check-and-consume and status
- Subscription comps and cancellation
- Payment order creation, polling and provider callbacks
- Health and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from quota_ledger.config import get_settings
from quota_ledger.errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    ProviderError,
    ReconciliationError,
    ValidationError,
)
from quota_ledger.ledger import Ledger, get_ledger
from quota_ledger.observability.logging import (
    configure_logging,
    get_logger,
    get_request_id,
    get_trace_id,
)
from quota_ledger.observability.logging_middleware import StructuredLoggingMiddleware
from quota_ledger.observability.metrics import generate_metrics, track_error
from quota_ledger.resilience.circuit_breakers import get_payment_provider_breaker
from quota_ledger.routers import billing_router

settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Opens the ledger database and wires services on startup; closes the
    database connection on shutdown.
    """
    logger.info("=== Quota Ledger Service Starting ===")

    try:
        ledger = await get_ledger()
        logger.info(
            "Ledger ready",
            provider=ledger.provider.name,
            db_path=str(ledger.db.db_path),
        )

        yield  # Application runs here

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")
        ledger = await get_ledger()
        ledger.db.close()
        logger.info("=== Shutdown complete ===")


app = FastAPI(
    title="Quota & Subscription Ledger",
    description="Usage metering, subscription lifecycle and payment reconciliation",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(StructuredLoggingMiddleware)
app.include_router(billing_router)


# Ledger error -> HTTP status
ERROR_STATUS_CODES: dict[type[LedgerError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    ProviderError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ReconciliationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    """Render ledger errors with their retryability."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    error_name = type(exc).__name__
    track_error(error_name, request.url.path)

    content = {
        "detail": str(exc),
        "error": error_name,
        "retryable": exc.retryable,
        "request_id": get_request_id(),
        "trace_id": get_trace_id(),
    }
    if isinstance(exc, ReconciliationError):
        content["order_id"] = exc.order_id
        logger.error(
            "Reconciliation error surfaced to caller",
            path=request.url.path,
            order_id=exc.order_id,
            user_id=exc.user_id,
        )
    elif status_code >= 500:
        logger.error("Ledger error", path=request.url.path, error=str(exc))
    else:
        logger.warning("Request rejected", path=request.url.path, error=str(exc))

    return JSONResponse(status_code=status_code, content=content)


@app.get("/health", tags=["System"])
async def health(response: Response, ledger: Ledger = Depends(get_ledger)):
    """Readiness check: the ledger database answers a trivial query."""
    try:
        ledger.db.fetch_one("SELECT 1")
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unhealthy", "database": "unavailable"}

    return {
        "status": "healthy",
        "database": "ok",
        "provider": ledger.provider.name,
        "payment_breaker": get_payment_provider_breaker().current_state,
    }


@app.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics endpoint."""
    metrics_data, content_type = generate_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.get("/", tags=["System"])
async def root():
    return {
        "service": "Quota & Subscription Ledger",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "quota_ledger.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        workers=settings.service.workers,
        log_level=settings.logging.level.lower(),
    )
