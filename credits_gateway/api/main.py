"""FastAPI application factory"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from credits_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from credits_gateway.api.v1 import accounts, authorize, credits, refunds
from credits_gateway.domain.exceptions import (
    AccountExistsError,
    AccountNotFoundError,
    InsufficientCreditsError,
    LedgerTransientError,
    RefundNotFoundError,
    TransactionNotFoundError,
)
from credits_gateway.infrastructure.observability.logging import setup_logging
from credits_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)

logger = logging.getLogger(__name__)

# Domain exception -> HTTP status
ERROR_STATUS = {
    AccountNotFoundError: 404,
    TransactionNotFoundError: 404,
    RefundNotFoundError: 404,
    AccountExistsError: 409,
    InsufficientCreditsError: 402,
    ValueError: 422,
    LedgerTransientError: 503,
}


def register_error_handlers(app: FastAPI) -> None:
    def handler(status_code: int):
        async def handle(request: Request, exc: Exception) -> JSONResponse:
            request_id = getattr(request.state, "request_id", "unknown")
            if status_code >= 500:
                logger.error(f"Request failed: {exc}", extra={"request_id": request_id})
            else:
                logger.info(f"Request rejected: {exc}", extra={"request_id": request_id})
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

        return handle

    for exc_class, status_code in ERROR_STATUS.items():
        app.add_exception_handler(exc_class, handler(status_code))


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Study Credits Gateway",
        description="Usage-credit ledger and risk-based access gate",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_error_handlers(app)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(accounts.router, prefix="/v1", tags=["accounts"])
    app.include_router(authorize.router, prefix="/v1", tags=["authorization"])
    app.include_router(credits.router, prefix="/v1", tags=["credits"])
    app.include_router(refunds.router, prefix="/v1", tags=["refunds"])

    return app


app = create_app()
