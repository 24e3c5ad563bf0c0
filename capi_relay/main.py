"""FastAPI application entrypoint.
Includes routers, maps pipeline errors to JSON responses, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .exceptions import PipelineError
from .routers import events as events_router
from .routers import shopify_webhooks as shopify_webhooks_router
from .routers import capi_internal as capi_internal_router
from .telemetry import init_sentry

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    init_sentry("api")  # Call before creating FastAPI app

    app = FastAPI(
        title="capi-relay API",
        description="""
        Server-side conversion event relay for Meta Conversions API.

        This API provides endpoints for:
        - Storefront touchpoints, add-to-cart and initiate-checkout events
        - Shopify orders/paid webhook ingestion (HMAC verified)
        - Delivery triggers for the queued events
        - Operator inspection, requeue and Meta settings
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-For from the load balancer so request.client carries the shopper IP
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()
    if settings.allowed_origins:
        logger.info(f"[CORS] Storefront origins: {sorted(settings.allowed_origins)}")
    else:
        logger.warning("[CORS] EVENT_ALLOWED_ORIGINS is empty - storefront routes accept any origin")

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": exc.message, "details": exc.details},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": "Invalid request", "details": str(exc.errors())},
        )

    app.include_router(events_router.router)  # Storefront events
    app.include_router(shopify_webhooks_router.router)  # Shopify orders/paid
    app.include_router(capi_internal_router.router)  # Delivery triggers and operator tools

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
