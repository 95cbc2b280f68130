"""FastAPI application factory"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from capguard.api.middleware import MetricsMiddleware, RequestIDMiddleware
from capguard.api.v1 import jobs
from capguard.config import settings
from capguard.infrastructure.observability.logging import setup_logging
from capguard.services.jobs import build_default_orchestrator
from capguard.services.scheduler import JobOrchestrator

# Setup structured logging
setup_logging(settings.log_level)

logger = logging.getLogger(__name__)


def create_app(orchestrator: Optional[JobOrchestrator] = None, start_scheduler: bool = True) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator; the default wiring is used when omitted
        start_scheduler: Run the job loops for the lifetime of the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.orchestrator is None:
            app.state.orchestrator = build_default_orchestrator(settings)
        if start_scheduler:
            app.state.orchestrator.start()
        try:
            yield
        finally:
            if app.state.orchestrator.started:
                await app.state.orchestrator.stop()

    app = FastAPI(
        title="CapGuard",
        description="Rate-cap excess interest accrual and settlement service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(jobs.router, prefix="/v1", tags=["jobs"])

    return app


app = create_app()
