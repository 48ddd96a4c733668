"""FastAPI application setup and configuration."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from guideway_booking_platform.api import api_router
from guideway_booking_platform.cache import RedisCache
from guideway_booking_platform.config import Settings, get_settings
from guideway_booking_platform.database import DatabaseManager
from guideway_booking_platform.middleware import (
    ErrorHandlerMiddleware,
    LoggingMiddleware,
    http_exception_handler,
    request_validation_exception_handler,
)
from guideway_booking_platform.schemas.common import HealthStatus
from guideway_booking_platform.services.payment_gateway import PaymentGateway, StripeGateway
from guideway_booking_platform.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

DESCRIPTION = """
## Guideway Booking Platform

Marketplace core for booking guided tours: tourists book a guide's listing,
pay through Stripe, and review the tour once it is completed.

### Authentication

Register or login, then send `Authorization: Bearer <access_token>`.

### Responses

Successful responses use the envelope `{success, message, data, meta}`; list
endpoints carry pagination in `meta.pagination`. Errors use
`{success: false, message, errors, error_code, error_id}`.

### Concurrency

Booking status changes use optimistic locking on a version column, payment
rows allow one active intent per booking, and payment reconciliation is
idempotent so webhooks and client confirmation can race safely.
"""


def create_app(settings: Optional[Settings] = None, gateway: Optional[PaymentGateway] = None) -> FastAPI:
    """
    Build the application.

    The database manager, cache and payment gateway are created in the
    lifespan and attached to ``app.state``; tests pass their own settings and
    gateway.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup and shutdown events."""
        # Startup
        logger.info("Starting Guideway Booking Platform")
        db = DatabaseManager(settings=settings)
        await db.initialize()
        cache = RedisCache(settings)
        await cache.initialize()

        app.state.db = db
        app.state.cache = cache if cache.available else None
        app.state.gateway = gateway or StripeGateway(settings)
        logger.info("Database initialized successfully")
        yield
        # Shutdown
        logger.info("Shutting down Guideway Booking Platform")
        await cache.close()
        await db.close()
        logger.info("Database connections closed")

    app = FastAPI(
        title="Guideway Booking Platform API",
        description=DESCRIPTION,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "authentication", "description": "Registration, login and the current user"},
            {"name": "bookings", "description": "Booking lifecycle and audit trail"},
            {"name": "payments", "description": "Payment intents, refunds and the gateway webhook"},
            {"name": "reviews", "description": "Reviews, moderation and guide responses"},
            {"name": "earnings", "description": "Guide earnings reports"},
            {"name": "admin", "description": "Bulk actions and rating repair"},
            {"name": "health", "description": "System health endpoints"},
        ],
        lifespan=lifespan,
    )

    # Error handling wraps everything below it; logging sits outermost so
    # error responses still carry the request id.
    app.add_middleware(ErrorHandlerMiddleware, debug=settings.debug)
    app.add_middleware(
        LoggingMiddleware,
        log_requests=settings.enable_request_logging,
        log_responses=settings.enable_request_logging
    )

    if settings.debug:
        # Cannot use credentials with wildcard origins
        cors_origins = ["*"]
        cors_allow_credentials = False
    else:
        cors_origins = settings.cors_origins
        cors_allow_credentials = settings.cors_allow_credentials

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
        expose_headers=settings.cors_expose_headers
    )

    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    app.include_router(api_router)

    @app.get("/", tags=["health"])
    async def root():
        """Basic information about the API."""
        return {
            "message": "Guideway Booking Platform API",
            "version": API_VERSION,
            "docs_url": "/docs",
            "status": "operational"
        }

    @app.get("/health", tags=["health"], response_model=HealthStatus)
    async def health_check(request: Request):
        """Liveness with a database round trip. Redis is reported but never fails the check."""
        dependencies = {}
        healthy = True
        try:
            await request.app.state.db.ping()
            dependencies["database"] = "healthy"
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Health check database failure: {e}")
            dependencies["database"] = "unhealthy"
            healthy = False
        dependencies["cache"] = "healthy" if getattr(request.app.state, "cache", None) else "disabled"
        breaker = getattr(request.app.state.gateway, "breaker", None)
        if breaker is not None:
            # An open breaker degrades payments only
            dependencies["payment_gateway"] = breaker.get_stats()["state"]

        body = HealthStatus(
            status="healthy" if healthy else "unhealthy",
            service="guideway-booking-platform",
            version=API_VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            dependencies=dependencies
        )
        return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())

    return app


def _configure_logging() -> None:
    settings = get_settings()
    setup_logging(
        log_level="DEBUG" if settings.debug else settings.log_level,
        log_file=settings.log_file or ("logs/guideway.log" if settings.environment == "production" else None),
        enable_json_logging=settings.enable_json_logging or settings.environment == "production"
    )


_configure_logging()
app = create_app()
