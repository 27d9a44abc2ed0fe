"""
Rezepta Subscriptions API - Main Application
============================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.core.errors import setup_exception_handlers
from app.db.session import close_db, init_db
from app.dependencies import reset_store_validators
from app.services.cache import close_redis, init_redis
from app.services.store_validation import close_store_http_client

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that adds custom attributes to every New Relic
    transaction.

    Raw ASGI keeps the route handler in the same task, so database, Redis
    and store API spans stay attached to the request trace.

    Captures: response status, latency, HTTP method, route pattern and,
    for webhook routes, the store platform.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # until the response starts

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                # Route pattern (e.g. "/api/v1/subscriptions/usage/{feature}") for grouping
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("environment", settings.ENVIRONMENT),
                ])

                if "/webhook/" in route_path:
                    newrelic.agent.add_custom_attribute(
                        "store.platform", route_path.rsplit("/", 1)[-1]
                    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for:
    - Database connection
    - Redis connection
    - Shared store API HTTP client
    """
    logger.info("Starting Rezepta Subscriptions API (%s)", settings.ENVIRONMENT)

    if settings.auth_disabled:
        logger.warning(
            "Authentication is DISABLED (DEV_AUTH_DISABLED=true); "
            "all requests act as %s. Do not use this in production.",
            settings.DEV_USER_ID,
        )

    if settings.is_production and not settings.APPLE_SHARED_SECRET:
        logger.warning("APPLE_SHARED_SECRET is not set; App Store notifications are not authenticated")

    # Continue startup even if a backend is down (for health checks)
    try:
        await init_db()
    except Exception as e:
        logger.error("Database connection failed: %s", e)

    try:
        await init_redis()
    except Exception as e:
        logger.error("Redis connection failed: %s", e)

    yield

    logger.info("Shutting down Rezepta Subscriptions API")
    await close_store_http_client()
    reset_store_validators()
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Rezepta Subscriptions API",
    description="""
## Subscription & Entitlement Service

Keeps one authoritative subscription record per user, reconciled from
Google Play and the App Store.

### Features
- **Verification**: Google Play purchase tokens and App Store receipts
- **Store notifications**: Play real-time developer notifications and App
  Store server notifications, idempotent and order-safe
- **Entitlements**: tier limits and monthly usage counters

### Rate Limits
- Purchase verification: 10 requests/minute
- Usage recording: 120 requests/minute
    """,
    version=API_VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        401: {"description": "Not authenticated"},
        403: {"description": "Feature limit reached"},
        422: {"description": "Validation error"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Internal server error"},
        503: {"description": "Subscription store unavailable"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API.
    """
    return {
        "status": "healthy",
        "version": API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Rezepta Subscriptions API",
        "version": API_VERSION,
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import subscription, webhooks
app.include_router(subscription.router, prefix="/api/v1/subscriptions", tags=["Subscriptions"])
app.include_router(webhooks.router, prefix="/api/v1/subscriptions", tags=["Store Notifications"])
