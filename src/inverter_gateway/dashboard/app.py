"""FastAPI application factory for the gateway HTTP surface."""

from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from inverter_gateway.config.schema import AppConfig
from inverter_gateway.errors import DeviceNotFound, InvalidInput
from inverter_gateway.live.bridge import LiveTelemetryBridge
from inverter_gateway.live.cache import LiveCache
from inverter_gateway.live.registry import DeviceWatchRegistry
from inverter_gateway.logging.context import bind_context, clear_context
from inverter_gateway.reconcile.engine import ReconciliationEngine
from inverter_gateway.resilience.health_check import HealthChecker

logger = logging.getLogger(__name__)


def create_app(
    config: AppConfig,
    engine: ReconciliationEngine,
    registry: DeviceWatchRegistry,
    cache: LiveCache,
    bridge: LiveTelemetryBridge | None = None,
    health: HealthChecker | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    from inverter_gateway import __version__

    app = FastAPI(
        title="Inverter Gateway",
        description="Multi-source solar inverter telemetry gateway",
        version=__version__,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        clear_context()
        bind_context(request_id=uuid.uuid4().hex[:12], path=request.url.path)
        response = await call_next(request)
        if request.method in {"GET", "HEAD"}:
            # Telemetry is live; browsers must never serve it from cache
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
            response.headers["Pragma"] = "no-cache"
            response.headers["Expires"] = "0"
        return response

    @app.exception_handler(InvalidInput)
    async def invalid_input(request: Request, exc: InvalidInput) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc), "code": "INVALID_INPUT"})

    @app.exception_handler(DeviceNotFound)
    async def device_not_found(request: Request, exc: DeviceNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content=exc.to_dict())

    # Store collaborators in app state for access in routes
    app.state.config = config
    app.state.engine = engine
    app.state.registry = registry
    app.state.cache = cache
    app.state.bridge = bridge
    app.state.health = health

    if config.dashboard.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.dashboard.cors_origins,
            allow_methods=["GET"],
            allow_headers=["*"],
        )

    # Register routes
    from inverter_gateway.dashboard.routes.api import router as api_router
    from inverter_gateway.dashboard.routes.devices import router as devices_router
    from inverter_gateway.dashboard.routes.sse import router as sse_router

    app.include_router(devices_router)
    app.include_router(api_router, prefix="/api")
    app.include_router(sse_router, prefix="/api")

    return app
