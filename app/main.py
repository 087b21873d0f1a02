"""
Billing Reconciliation API
==========================

Application entry point: logging, middleware, lifespan and routers.

Stripe and the App Store both feed the same per-user subscription record;
every route that mutates it goes through ``app.services.reconciler``.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Root logger defaults to WARNING; service logs are INFO
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from redis.exceptions import RedisError

from app.config import settings
from app.core.errors import setup_exception_handlers
from app.db.session import close_db, get_db, init_db
from app.services.cache import close_redis, get_redis, init_redis

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"
SERVICE_NAME = "Billing Reconciliation API"


class NewRelicTransactionMiddleware:
    """
    Tags each New Relic web transaction with route, status, latency and
    client attributes, so webhook failures can be alerted on per route.

    Written as raw ASGI rather than ``BaseHTTPMiddleware`` so the handler
    runs in the same task and database/Redis spans stay on the transaction.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        started = time.perf_counter()
        status_code = 500

        async def capture_status(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, capture_status)
        finally:
            if newrelic.agent.current_transaction() is not None:
                newrelic.agent.add_custom_attributes(
                    self._attributes(scope, status_code, started)
                )

    @staticmethod
    def _attributes(scope, status_code: int, started: float) -> list[tuple]:
        route = scope.get("route")
        client = scope.get("client")
        return [
            ("http.method", scope.get("method", "")),
            # Route template, so /webhooks/stripe groups regardless of payload
            ("http.route", route.path if route else scope.get("path", "unknown")),
            ("http.status_code", status_code),
            ("http.duration_ms", round((time.perf_counter() - started) * 1000, 2)),
            ("http.client_ip", client[0] if client else "unknown"),
            ("environment", settings.ENVIRONMENT),
        ]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Starting %s (%s)", SERVICE_NAME, settings.ENVIRONMENT)

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; all Stripe webhooks will be rejected")
    if not settings.APPLE_SHARED_SECRET:
        logger.warning("APPLE_SHARED_SECRET is not set; auto-renewable receipts will not validate")
    if not settings.apple_root_cert_paths:
        logger.warning("APPLE_ROOT_CERT_PATHS is not set; all App Store notifications will be rejected")

    # Stay up without a database so /health answers and the orchestrator
    # can tell a dead dependency from a dead process
    try:
        await init_db()
    except (SQLAlchemyError, OSError, ValueError) as e:
        logger.error("Database connection failed: %s", e)

    try:
        await init_redis()
    except (RedisError, OSError) as e:
        logger.error("Redis connection failed: %s", e)

    yield

    logger.info("Shutting down %s", SERVICE_NAME)
    await close_db()
    await close_redis()


app = FastAPI(
    title=SERVICE_NAME,
    description="""
Reconciles Stripe card subscriptions and App Store in-app purchases into one
entitlement record per user.

- **Webhooks**: signed Stripe events and App Store Server Notifications, applied exactly once
- **Receipts**: App Store receipt validation
- **Entitlement**: tier and item limits from a single read path
- **Billing**: checkout, cancel, refund and billing-cycle switch
    """,
    version=API_VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        401: {"description": "Not authenticated"},
        402: {"description": "Payment declined"},
        409: {"description": "Billing state conflict"},
        503: {"description": "Payment provider unavailable"},
    },
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)
app.add_middleware(NewRelicTransactionMiddleware)

setup_exception_handlers(app)


@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """Liveness: the process is up. Does not touch dependencies."""
    return {
        "status": "healthy",
        "version": API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@app.get("/health/ready", tags=["Health"])
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """
    Readiness: Postgres is required, Redis is not.

    Without the database no webhook can be claimed, so the instance should
    leave the load balancer. A Redis outage only costs cache hits.
    """
    checks = {"database": "ok", "redis": "ok"}

    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error("Readiness: database check failed: %s", e)
        checks["database"] = "unavailable"

    try:
        await (await get_redis()).ping()
    except (RedisError, OSError) as e:
        logger.warning("Readiness: redis check failed: %s", e)
        checks["redis"] = "degraded"

    ready = checks["database"] == "ok"
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "unavailable", "checks": checks},
    )


@app.get("/", tags=["Health"])
async def root() -> dict:
    return {
        "name": SERVICE_NAME,
        "version": API_VERSION,
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


from app.api.v1 import admin, billing, entitlement, receipts, usage, webhooks

app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
app.include_router(receipts.router, prefix="/api/v1/receipts", tags=["Receipts"])
app.include_router(entitlement.router, prefix="/api/v1/entitlement", tags=["Entitlement"])
app.include_router(billing.router, prefix="/api/v1/billing", tags=["Billing"])
app.include_router(usage.router, prefix="/api/v1/usage", tags=["Usage"])
app.include_router(admin.router, prefix="/api/v1/admin", tags=["Admin"])
