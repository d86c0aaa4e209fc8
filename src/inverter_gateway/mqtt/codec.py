"""JSON payload codec for broker telemetry messages."""

from __future__ import annotations

import json
import time
from datetime import timezone, tzinfo

from inverter_gateway.errors import UpstreamMalformed
from inverter_gateway.live.sample import (
    DISCHARGE_POSITIVE,
    RealtimeSample,
    parse_timestamp,
    sample_from_fields,
)

SOURCE_ID = "live"


def encode_sample_request(device_id: str) -> str:
    """Payload asking the inverter to push a fresh report."""
    return json.dumps({"deviceId": device_id, "cmd": "report", "ts": int(time.time() * 1000)})


def decode_report(
    device_id: str,
    payload: bytes | str,
    convention: str = DISCHARGE_POSITIVE,
    site_tz: tzinfo = timezone.utc,
) -> RealtimeSample:
    """Decode one report into a complete sample.

    Accepts the nested ``{"data": {...}, "cells": {...}}`` shape as well as a
    flat field map. Raises UpstreamMalformed for anything else, including a
    report whose embedded device id disagrees with its topic. A timestamp
    without an offset is site-local wall-clock time.
    """
    try:
        message = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise UpstreamMalformed(SOURCE_ID, "report is not JSON") from e
    if not isinstance(message, dict):
        raise UpstreamMalformed(SOURCE_ID, "report is not an object")

    embedded = message.get("deviceId") or message.get("device_id")
    if embedded and embedded != device_id:
        raise UpstreamMalformed(SOURCE_ID, f"report for {embedded} on topic of {device_id}")

    data = message.get("data", message)
    if not isinstance(data, dict):
        raise UpstreamMalformed(SOURCE_ID, "report data is not an object")

    cells = message.get("cells")
    if isinstance(cells, dict):
        cells = cells.get("cellVoltages", cells)

    return sample_from_fields(
        device_id,
        data,
        cells=cells,
        captured_at=parse_timestamp(message.get("timestamp") or message.get("ts"), site_tz),
        convention=convention,
    )
