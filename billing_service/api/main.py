"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and manages
the process-wide resources.  At startup the lifespan validates required
configuration, initialises logging and Sentry, creates the database engine,
ensures the schema exists and builds the Stripe gateway; at shutdown it
disposes the engine pool.  When run with ``billing-service`` (or
``python -m billing_service.api.main``) uvicorn serves on ``HTTP_PORT`` and
drains in-flight requests for ``SHUTDOWN_GRACE_SECONDS`` on SIGTERM.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request

from billing_service.api.endpoints.health import router as health_router
from billing_service.api.error_handlers import register_exception_handlers
from billing_service.api.routes.checkout import router as checkout_router
from billing_service.api.routes.portal import router as portal_router
from billing_service.api.routes.stripe_webhooks import router as stripe_webhooks_router
from billing_service.api.routes.subscriptions import router as subscriptions_router
from billing_service.core import database
from billing_service.core.config import get_log_level, settings
from billing_service.core.observability import configure_logging, init_sentry, sentry_set_tags
from billing_service.core.security import require_api_key
from billing_service.services.store import BillingStore
from billing_service.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    configure_logging()
    missing = settings.missing_required()
    if missing:
        raise RuntimeError(f"Missing required configuration: {', '.join(missing)}")

    logger.info("Starting %s (%s)...", settings.SERVICE_NAME, settings.ENVIRONMENT)
    # Centralised Sentry init (idempotent)
    if init_sentry(settings.SERVICE_NAME):
        logger.info("Sentry SDK initialized (api)")

    engine = database.init_engine()
    store = BillingStore(engine, database.AsyncSessionLocal)
    await store.initialize_schema()
    app.state.store = store
    app.state.gateway = StripeGateway(
        settings.STRIPE_SECRET_KEY,
        portal_configuration_id=settings.STRIPE_PORTAL_CONFIGURATION_ID,
    )
    try:
        yield
    finally:
        logger.info("Shutting down...")
        app.state.store = None
        app.state.gateway = None
        await database.dispose_engine()


async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    sentry_set_tags({"request_id": request_id, "path": request.url.path, "method": request.method})
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


async def root():
    """Service banner."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
        "endpoints": {
            "health": "GET /health",
            "subscription_checkout": f"POST {settings.API_V1_STR}/checkout/subscription",
            "item_checkout": f"POST {settings.API_V1_STR}/checkout/item",
            "cart_checkout": f"POST {settings.API_V1_STR}/checkout/cart",
            "subscription_status": f"GET {settings.API_V1_STR}/subscriptions/{{user_id}}/{{product_id}}",
            "customer_portal": f"POST {settings.API_V1_STR}/portal",
            "stripe_webhook": "POST /webhooks/stripe",
        },
    }


def create_app() -> FastAPI:
    app = FastAPI(
        title="Billing Service API",
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.middleware("http")(request_context_middleware)
    register_exception_handlers(app)

    app.add_api_route("/", root, methods=["GET"])
    app.include_router(health_router)
    app.include_router(stripe_webhooks_router)

    api_dependencies = [Depends(require_api_key)]
    app.include_router(checkout_router, prefix=settings.API_V1_STR, dependencies=api_dependencies)
    app.include_router(subscriptions_router, prefix=settings.API_V1_STR, dependencies=api_dependencies)
    app.include_router(portal_router, prefix=settings.API_V1_STR, dependencies=api_dependencies)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "billing_service.api.main:app",
        host="0.0.0.0",
        port=settings.HTTP_PORT,
        log_level=get_log_level().lower(),
        timeout_graceful_shutdown=settings.SHUTDOWN_GRACE_SECONDS,
    )


if __name__ == "__main__":
    run()
