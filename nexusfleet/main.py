"""
FastAPI application entrypoint

Hosts the fleet scheduler for the lifetime of the process and exposes
liveness, loop status and Prometheus metrics.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import Response

from nexusfleet import __version__
from nexusfleet.config import FleetSettings, get_settings
from nexusfleet.db.base import SessionLocal, init_db
from nexusfleet.networking.remote_executor import build_remote_executor
from nexusfleet.services.collaborators import SqlUsageService
from nexusfleet.services.fleet_scheduler import FleetScheduler, build_fleet_scheduler
from nexusfleet.services.prometheus_metrics_service import get_metrics_service

logger = logging.getLogger(__name__)

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _default_scheduler(settings: FleetSettings) -> FleetScheduler:
    metrics = get_metrics_service()
    executor = build_remote_executor(settings, metrics=metrics)
    return build_fleet_scheduler(
        SessionLocal,
        executor,
        SqlUsageService(SessionLocal),
        settings=settings,
        metrics=metrics,
    )


def create_app(
    settings: Optional[FleetSettings] = None,
    scheduler_factory: Optional[Callable[[FleetSettings], FleetScheduler]] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Runtime settings (process settings by default)
        scheduler_factory: Builds the scheduler started in the lifespan
    """
    settings = settings or get_settings()
    scheduler_factory = scheduler_factory or _default_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db()
        scheduler = scheduler_factory(settings)
        app.state.scheduler = scheduler
        scheduler.start()
        logger.info(f"nexusfleet {__version__} started ({settings.environment})")
        try:
            yield
        finally:
            await scheduler.stop()
            logger.info("nexusfleet stopped")

    app = FastAPI(
        title="NexusFleet",
        description="WireGuard fleet reconciliation and provisioning engine",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/health/fleet")
    async def fleet_health(request: Request):
        scheduler: Optional[FleetScheduler] = getattr(request.app.state, "scheduler", None)
        loops = scheduler.status() if scheduler is not None else {}
        failing = [name for name, loop in loops.items() if loop["last_error"]]
        return {
            "status": "degraded" if failing else "ok",
            "environment": settings.environment,
            "loops": loops,
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        content = get_metrics_service().generate_metrics()
        return Response(content=content, media_type=PROMETHEUS_CONTENT_TYPE)

    return app


configure_logging(os.getenv("LOG_LEVEL", "INFO"))
app = create_app()


def run() -> None:
    """Console entrypoint: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "nexusfleet.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
