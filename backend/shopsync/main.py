"""FastAPI application entrypoint.

Builds the app with its store, resilience wrapper and reconciliation worker,
configures CORS and includes routers.

Run with:
    uvicorn shopsync.main:create_app --factory
"""

import logging
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .database import build_engine, build_session_factory, create_tables
from .deps import Settings, get_settings
from .routers import health as health_router
from .routers import webhook_management as webhook_management_router
from .routers import webhooks as webhooks_router
from .services.resilience import ResilienceWrapper, breaker_config_from_settings
from .services.shopify_client import SHOPIFY_HTTP_TIMEOUT_SECONDS
from .telemetry.sentry import init_sentry
from .workers.reconciliation_worker import ReconciliationWorker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Defaults to the cached environment settings
        session_factory: Defaults to one built from settings.DATABASE_URL
    """
    settings = settings or get_settings()
    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)

    app = FastAPI(
        title="shopsync API",
        description="""
        Multi-tenant Shopify event ingestion and reconciliation.

        - **Webhooks**: signed Shopify deliveries, applied effectively-once
        - **Webhook Management**: ledger, retries, dead-letter queue, subscriptions
        - **Health**: store, circuit breaker and DLQ status
        """,
        version="0.1.0",
    )

    if session_factory is None:
        session_factory = build_session_factory(build_engine(settings.DATABASE_URL))

    # Process-lifetime state; nothing here is a module global
    resilience = ResilienceWrapper.from_settings(settings)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.resilience = resilience
    app.state.shopify_http_client = None
    app.state.reconciliation_worker = ReconciliationWorker(
        session_factory, settings, breaker_config=breaker_config_from_settings(settings)
    )

    # Trust X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhooks_router.router)
    app.include_router(webhook_management_router.router)
    app.include_router(health_router.router)

    @app.on_event("startup")
    async def startup_event():
        create_tables(session_factory.kw["bind"])

        # One pooled client for operator calls and reconciliation pulls
        http_client = httpx.AsyncClient(timeout=SHOPIFY_HTTP_TIMEOUT_SECONDS)
        app.state.shopify_http_client = http_client
        app.state.reconciliation_worker.http_client = http_client

        if settings.SYNC_ENABLED:
            app.state.reconciliation_worker.start()
        else:
            logger.info("[STARTUP] Reconciliation disabled (SYNC_ENABLED=false)")

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.reconciliation_worker.stop()
        if app.state.shopify_http_client is not None:
            await app.state.shopify_http_client.aclose()
            app.state.shopify_http_client = None

    return app
