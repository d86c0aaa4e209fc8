"""REST API endpoints returning JSON data."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from inverter_gateway.dashboard.routes.devices import parse_date
from inverter_gateway.logging.context import bind_context

router = APIRouter()
logger = logging.getLogger(__name__)


# ── SOC timeline ─────────────────────────────────────

@router.get("/soc/{device_id}/{day}")
async def soc_timeline(request: Request, device_id: str, day: str) -> dict:
    """SOC curve for one date, 5-minute points."""
    bind_context(device_id=device_id)
    query_date = parse_date(day, request)
    timeline = await request.app.state.engine.get_soc_timeline(device_id, query_date)
    return {
        "device_id": device_id,
        "date": query_date.isoformat(),
        "timeline": [p.to_dict() for p in timeline],
    }


# ── Health ───────────────────────────────────────────

@router.get("/health")
async def health(request: Request) -> dict:
    """Upstream source health and broker bridge state."""
    checker = request.app.state.health
    bridge = request.app.state.bridge
    return {
        "status": "ok" if checker is None or checker.all_healthy() else "degraded",
        "sources": checker.snapshot() if checker else {},
        "unhealthy": checker.get_unhealthy() if checker else [],
        "live": bridge.status() if bridge else {"connected": False},
        "watched_devices": request.app.state.registry.watched_devices(),
    }
