"""Per-device JSON endpoints backed by the reconciliation engine."""

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Query, Request

from inverter_gateway.logging.context import bind_context
from inverter_gateway.timezone_utils import parse_query_date

router = APIRouter()
logger = logging.getLogger(__name__)


def parse_date(raw: str | None, request: Request) -> date:
    return parse_query_date(raw, request.app.state.config.reconcile.timezone)


@router.get("/device/{device_id}")
async def device_data(request: Request, device_id: str, date: str | None = None) -> dict:
    """Merged report: day energy, meta, SOC curve and realtime overlay."""
    bind_context(device_id=device_id)
    day = parse_date(date, request)
    report = await request.app.state.engine.get_device_data(device_id, day)
    return report.to_dict()


@router.get("/device/{device_id}/today")
async def device_today(request: Request, device_id: str) -> dict:
    bind_context(device_id=device_id)
    day = parse_date(None, request)
    energy = await request.app.state.engine.get_day_energy(device_id, day)
    return {
        "device_id": device_id,
        "date": day.isoformat(),
        "day_energy": energy.to_dict() if energy else None,
        "data_source": energy.source_id if energy else None,
    }


@router.get("/device/{device_id}/summary")
async def device_summary(
    request: Request,
    device_id: str,
    start: str = Query(..., alias="from"),
    end: str = Query(..., alias="to"),
) -> dict:
    """Daily energy over a range with monthly totals."""
    bind_context(device_id=device_id)
    summary = await request.app.state.engine.get_energy_summary(
        device_id, parse_date(start, request), parse_date(end, request),
    )
    return summary.to_dict()


@router.get("/device/{device_id}/soc")
async def device_soc(request: Request, device_id: str, date: str | None = None) -> dict:
    bind_context(device_id=device_id)
    day = parse_date(date, request)
    timeline = await request.app.state.engine.get_soc_timeline(device_id, day)
    return {
        "device_id": device_id,
        "date": day.isoformat(),
        "timeline": [p.to_dict() for p in timeline],
    }


@router.get("/device/{device_id}/realtime")
async def device_realtime(request: Request, device_id: str) -> dict:
    """Latest realtime sample; polled by the dashboard every few seconds."""
    bind_context(device_id=device_id)
    result = await request.app.state.engine.get_realtime(device_id)
    if result is None:
        return {"device_id": device_id, "realtime": None, "source": None}
    sample, source_id = result
    return {
        "device_id": device_id,
        "realtime": sample.to_dict(),
        "source": source_id,
        "sample_age_seconds": round(sample.age_seconds(), 1),
    }
