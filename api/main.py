"""
Lead Unlock Broker API - Main Application.

FastAPI application factory. The broker context (Supabase client, settings,
SMS / payment / AI adapters) is built in the lifespan, stored on `app.state`,
and the background scheduler is started and stopped with the application.

Run locally:
    uvicorn api.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import __version__
from api.routers import analytics, leads, operations, providers, unlocks, webhooks
from services.context import BrokerContext, build_context
from services.lead_service import dispatch_scheduled
from services.scheduler_service import LeadScheduler
from services.settings import BrokerSettings

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    settings: Optional[BrokerSettings] = None,
    context: Optional[BrokerContext] = None,
) -> FastAPI:
    """
    Build the application.

    Passing a ready `context` skips adapter construction (tests, scripts);
    otherwise one is built from `settings` (or the environment) at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context
        owns_context = ctx is None
        if ctx is None:
            resolved = settings or BrokerSettings.from_env()
            configure_logging(resolved.log_level)
            ctx = build_context(resolved)
        app.state.broker = ctx

        scheduler: Optional[LeadScheduler] = None
        if ctx.settings.scheduler_enabled:
            scheduler = LeadScheduler(ctx, dispatch_scheduled)
            scheduler.start()
        app.state.scheduler = scheduler
        logger.info("Lead Unlock Broker started", extra={"version": __version__})

        yield

        if scheduler is not None:
            await scheduler.stop()
        # A context passed in by the caller is closed by the caller.
        if owns_context:
            ctx.close()
        logger.info("Lead Unlock Broker stopped")

    app = FastAPI(
        title="Lead Unlock Broker API",
        description="Brokers client requests to providers over SMS and gates contact details behind a paid unlock",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Webhooks are server-to-server; the browser only hits the read-only lead API.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["Health"])
    def health_check():
        """
        Health check endpoint.

        Returns the API status and version.
        """
        return {
            "status": "healthy",
            "version": __version__,
            "service": "lead-unlock-broker",
        }

    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(leads.router, prefix="/api/v1", tags=["Leads"])
    app.include_router(operations.router, prefix="/api/v1", tags=["Operations"])
    app.include_router(providers.router, prefix="/api/v1", tags=["Providers"])
    app.include_router(analytics.router, prefix="/api/v1", tags=["Analytics"])
    app.include_router(unlocks.router, prefix="/unlocks", tags=["Checkout"])
    return app


app = create_app()
