"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, the
lifespan that builds the visitor sync service, and the v1 API router.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.visitor_sync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.visitor_sync.api.v1.router import router as v1_router
from src.visitor_sync.config import get_settings
from src.visitor_sync.core.monitoring import MetricsMiddleware, get_metrics_response
from src.visitor_sync.errors import ConfigurationError
from src.visitor_sync.sync.service import VisitorSyncService, build_service

# Upper bound on how long shutdown waits for in-flight reconciliations.
SHUTDOWN_DRAIN_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build the service on startup, drain runs on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog(settings)

    if getattr(app.state, "visitor_sync", None) is None:
        try:
            app.state.visitor_sync = build_service(settings)
            app.state.configuration_error = None
        except ConfigurationError as exc:
            # Serve health and 503s rather than refusing to start.
            app.state.visitor_sync = None
            app.state.configuration_error = str(exc)
            log.error("startup.configuration_error", error=str(exc))

    log.info(
        "startup.complete",
        environment=settings.ENVIRONMENT.value,
        configured=app.state.visitor_sync is not None,
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    service: VisitorSyncService | None = getattr(app.state, "visitor_sync", None)
    if service is not None:
        try:
            await asyncio.wait_for(service.coordinator.wait_idle(), SHUTDOWN_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            log.warning(
                "shutdown.reconciliations_abandoned",
                meetings=service.coordinator.active_meetings(),
            )
    log.info("shutdown.complete")


def create_app(service: VisitorSyncService | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Pre-built service; when omitted the lifespan builds one from
            settings.
    """
    settings = get_settings()

    app = FastAPI(
        title="Visitor Sync API",
        version="0.1.0",
        description="Keeps the lobby visitor list in step with meeting attendees",
        lifespan=lifespan,
    )
    app.state.visitor_sync = service
    app.state.configuration_error = None

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
