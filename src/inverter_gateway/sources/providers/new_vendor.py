"""New vendor REST API source.

Best source for daily energy totals, the per-day SOC curve and device
metadata. Offers no live readings. Requests carry a portal session cookie
obtained outside the gateway.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx

from inverter_gateway.config.schema import NewVendorSourceConfig
from inverter_gateway.errors import UpstreamMalformed
from inverter_gateway.sources.base import (
    Capability,
    DayEnergySummary,
    DayPowerCurves,
    DeviceMeta,
    SocTimelinePoint,
    curve_from_slots,
    decawatt_hours_to_kwh,
    timeline_from_slots,
)
from inverter_gateway.sources.http import HttpSource, require_mapping

logger = logging.getLogger(__name__)

DAY_DATA_PATH = "/manage/lesvr/getAllDayData"
BAT_SOC_PATH = "/manage/lesvr/batSoc"
DEVICE_LIST_PATH = "/manage/lesvr/getUserSnList"

# Tables that carry an energy total in the day payload
_ENERGY_TABLES = ("pv", "bat", "batF", "grid", "homeload", "essentialLoad")


class NewVendorSource(HttpSource):
    """Vendor REST API: day energy, SOC timeline, device metadata."""

    source_id = "new_vendor"
    capabilities = frozenset({
        Capability.DAY_ENERGY,
        Capability.SOC_TIMELINE,
        Capability.DEVICE_META,
    })

    def __init__(self, config: NewVendorSourceConfig, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(config, client)

    async def fetch_day_energy(self, device_id: str, day: date) -> DayEnergySummary | None:
        data = await self._fetch_day_tables(DAY_DATA_PATH, device_id, day)
        if data is None:
            return None

        if not any(isinstance(data.get(key), dict) for key in _ENERGY_TABLES):
            logger.debug("New vendor day data for %s on %s has no energy tables", device_id, day)
            return None

        summary = DayEnergySummary(
            device_id=device_id,
            date=day,
            pv_kwh=decawatt_hours_to_kwh(_table_value(data, "pv")),
            load_kwh=decawatt_hours_to_kwh(_table_value(data, "homeload")),
            grid_kwh=decawatt_hours_to_kwh(_table_value(data, "grid")),
            battery_charge_kwh=decawatt_hours_to_kwh(_table_value(data, "bat")),
            battery_discharge_kwh=decawatt_hours_to_kwh(_table_value(data, "batF")),
            essential_load_kwh=decawatt_hours_to_kwh(_table_value(data, "essentialLoad")),
            source_id=self.source_id,
            curves=_power_curves(data),
        )
        logger.info(
            "New vendor day energy for %s on %s: pv=%.1f load=%.1f kWh",
            device_id, day, summary.pv_kwh, summary.load_kwh,
        )
        return summary

    async def fetch_soc_timeline(self, device_id: str, day: date) -> list[SocTimelinePoint]:
        data = await self._fetch_day_tables(BAT_SOC_PATH, device_id, day)
        if data is None:
            return []
        table = data.get("batSoc")
        if not isinstance(table, dict):
            return []
        values = table.get("tableValueInfo") or []
        if not isinstance(values, list):
            raise UpstreamMalformed(self.source_id, "batSoc.tableValueInfo is not a list")
        return timeline_from_slots(values)

    async def fetch_device_meta(self, device_id: str) -> DeviceMeta | None:
        payload = await self._get_json(DEVICE_LIST_PATH)
        if payload is None:
            return None
        rows = require_mapping(self.source_id, payload, "device list").get("rows") or []
        for row in rows:
            if isinstance(row, dict) and row.get("deviceId") == device_id:
                return DeviceMeta(
                    device_id=device_id,
                    device_type=row.get("deviceType") or "",
                    online=_as_int(row.get("deviceStatus")) == 1,
                    remark_name=row.get("remarkName") or "",
                )
        return None

    async def _fetch_day_tables(self, path: str, device_id: str, day: date) -> dict | None:
        payload = await self._post_json(
            path,
            data={"deviceId": device_id, "day": day.isoformat()},
        )
        if payload is None:
            return None
        payload = require_mapping(self.source_id, payload, "day response")
        if payload.get("returnValue") not in (0, None):
            logger.debug(
                "New vendor %s for %s returned %s", path, device_id, payload.get("returnValue"),
            )
            return None
        data = payload.get("data")
        if data is None:
            return None
        return require_mapping(self.source_id, data, "day data")


def _power_curves(data: dict) -> DayPowerCurves:
    return DayPowerCurves(
        pv=curve_from_slots(_table_curve(data, "pv")),
        battery=curve_from_slots(_table_curve(data, "bat")),
        grid=curve_from_slots(_table_curve(data, "grid")),
        home_load=curve_from_slots(_table_curve(data, "homeload")),
        essential_load=curve_from_slots(_table_curve(data, "essentialLoad")),
    )


def _table_curve(data: dict, key: str) -> Any:
    table = data.get(key)
    return table.get("tableValueInfo") if isinstance(table, dict) else None


def _table_value(data: dict, key: str) -> Any:
    table = data.get(key)
    if not isinstance(table, dict):
        return None
    return table.get("tableValue")


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
