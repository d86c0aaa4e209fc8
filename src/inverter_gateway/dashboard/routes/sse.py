"""Server-Sent Events for live device updates."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Request
from starlette.responses import StreamingResponse

from inverter_gateway.live.fanout import QueueSubscriber
from inverter_gateway.live.sample import RealtimeSample, validate_device_id

router = APIRouter()
logger = logging.getLogger(__name__)


def _event(sample: RealtimeSample) -> str:
    return f"event: realtime\ndata: {json.dumps(sample.to_dict())}\n\n"


@router.get("/events/{device_id}")
async def event_stream(request: Request, device_id: str) -> StreamingResponse:
    """SSE endpoint streaming each new live sample of one device.

    The connection is a watcher for as long as it is open; closing it
    releases the watch.
    """
    validate_device_id(device_id)
    registry = request.app.state.registry
    cache = request.app.state.cache
    keepalive = request.app.state.config.dashboard.sse_keepalive_seconds

    async def generate():
        handle = QueueSubscriber(label=f"sse:{device_id}")
        await registry.subscribe(device_id, handle)
        logger.info("SSE client attached to %s", device_id)
        try:
            cached = cache.get(device_id)
            if cached is not None:
                yield _event(cached)

            while True:
                if await request.is_disconnected():
                    break
                sample = await handle.next(timeout=keepalive)
                if sample is None:
                    yield ": keepalive\n\n"
                else:
                    yield _event(sample)
        finally:
            await registry.on_subscriber_disconnected(handle)
            logger.info("SSE client detached from %s", device_id)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
