"""Public mirror API source.

Reachable from most hosting regions. Serves live readings (including cell
voltages) and the per-day SOC curve. The mirror publishes no per-day
energy totals and no device metadata, so it never wins the day-energy
chain.
"""

from __future__ import annotations

import logging
from datetime import date

import httpx

from inverter_gateway.config.schema import MirrorSourceConfig
from inverter_gateway.errors import UpstreamMalformed
from inverter_gateway.live.sample import (
    DISCHARGE_POSITIVE,
    RealtimeSample,
    parse_timestamp,
    sample_from_fields,
)
from inverter_gateway.sources.base import (
    Capability,
    SocTimelinePoint,
    build_soc_timeline,
)
from inverter_gateway.sources.http import HttpSource, require_mapping

logger = logging.getLogger(__name__)


class MirrorSource(HttpSource):
    """Mirror REST API: realtime and SOC timeline."""

    source_id = "mirror"
    capabilities = frozenset({
        Capability.REALTIME,
        Capability.SOC_TIMELINE,
    })

    def __init__(
        self,
        config: MirrorSourceConfig,
        client: httpx.AsyncClient | None = None,
        battery_power_sign: str = DISCHARGE_POSITIVE,
    ) -> None:
        super().__init__(config, client)
        self._sign = battery_power_sign

    async def fetch_realtime(self, device_id: str) -> RealtimeSample | None:
        payload = await self._get_json(f"/api/realtime/{device_id}")
        if payload is None:
            return None
        payload = require_mapping(self.source_id, payload, "realtime response")
        if "device_id" not in payload:
            raise UpstreamMalformed(self.source_id, "realtime response without device_id")
        data = payload.get("data")
        if data is None:
            return None
        data = require_mapping(self.source_id, data, "realtime data")

        cells = payload.get("cells")
        cell_map = cells.get("cellVoltages") if isinstance(cells, dict) else None
        sample = sample_from_fields(
            device_id,
            data,
            cells=cell_map,
            captured_at=parse_timestamp(payload.get("updated_at")),
            convention=self._sign,
        )
        logger.debug(
            "Mirror realtime for %s: soc=%s pv=%s", device_id, sample.battery_soc, sample.pv_total_w,
        )
        return sample

    async def fetch_soc_timeline(self, device_id: str, day: date) -> list[SocTimelinePoint]:
        payload = await self._get_json(f"/api/soc/{device_id}/{day.isoformat()}")
        if payload is None:
            return []
        payload = require_mapping(self.source_id, payload, "soc response")
        raw = payload.get("timeline") or []
        if not isinstance(raw, list):
            raise UpstreamMalformed(self.source_id, "timeline is not a list")
        points = [
            (str(p.get("t", "")), float(p["soc"]))
            for p in raw
            if isinstance(p, dict) and p.get("soc") is not None
        ]
        return build_soc_timeline(points)
