"""Legacy vendor server source.

Slowest and least reliable upstream, used only as the last day-energy
fallback. Each device needs a share token derived from the server clock,
and the server answers in JSON or XML depending on its mood.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx

from inverter_gateway.config.schema import LegacySourceConfig
from inverter_gateway.errors import UpstreamMalformed
from inverter_gateway.sources.base import (
    Capability,
    DayEnergySummary,
    DeviceMeta,
    decawatt_hours_to_kwh,
)
from inverter_gateway.sources.http import HttpSource, require_mapping

logger = logging.getLogger(__name__)

SERVER_TIME_PATH = "/lesvr/getServerTime"
SHARE_TOKEN_PATH = "/lesvr/shareDevices"
OTHER_DAY_PATH = "/lesvr/getOtherDayData"
PV_DAY_PATH = "/lesvr/getPVDayData"
BAT_DAY_PATH = "/lesvr/getBatDayData"
DEVICE_PATH = "/lesvr/getDevice"

RETURN_OK = 1


class LegacySource(HttpSource):
    """Legacy server: day energy and device metadata behind a share token."""

    source_id = "legacy"
    capabilities = frozenset({Capability.DAY_ENERGY, Capability.DEVICE_META})

    def __init__(self, config: LegacySourceConfig, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(config, client)
        self._tokens: dict[str, str] = {}

    async def fetch_day_energy(self, device_id: str, day: date) -> DayEnergySummary | None:
        params = {"deviceId": device_id, "queryDate": day.isoformat()}

        pv = await self._call(PV_DAY_PATH, device_id, params)
        if pv is None:
            return None
        pv_total = _nested(pv, "pv", "tableValue")
        if pv_total is None:
            logger.debug("Legacy PV data for %s on %s has no total", device_id, day)
            return None

        other = await self._call(OTHER_DAY_PATH, device_id, params) or {}
        bat = await self._call(BAT_DAY_PATH, device_id, params) or {}
        charge, discharge = _battery_totals(bat)

        return DayEnergySummary(
            device_id=device_id,
            date=day,
            pv_kwh=decawatt_hours_to_kwh(pv_total),
            load_kwh=decawatt_hours_to_kwh(_nested(other, "homeload", "tableValue")),
            grid_kwh=decawatt_hours_to_kwh(_nested(other, "grid", "tableValue")),
            battery_charge_kwh=decawatt_hours_to_kwh(charge),
            battery_discharge_kwh=decawatt_hours_to_kwh(discharge),
            essential_load_kwh=decawatt_hours_to_kwh(_nested(other, "essentialLoad", "tableValue")),
            source_id=self.source_id,
        )

    async def fetch_device_meta(self, device_id: str) -> DeviceMeta | None:
        data = await self._call(DEVICE_PATH, device_id, {"snName": device_id})
        if not data:
            return None
        info = data.get("data", data) if isinstance(data.get("data"), dict) else data
        return DeviceMeta(
            device_id=device_id,
            device_type=str(info.get("deviceType") or ""),
            online=str(info.get("onlineStatus", "")) == "1",
            remark_name=str(info.get("remarkName") or ""),
        )

    async def _token(self, device_id: str) -> str | None:
        if device_id in self._tokens:
            return self._tokens[device_id]

        payload = await self._get_json(SERVER_TIME_PATH)
        data = self._ok_data(payload, "server time")
        server_time = data.get("serverTime") if data else None
        if not server_time:
            return None

        payload = await self._get_json(
            SHARE_TOKEN_PATH,
            params={"deviceIds": device_id, "serverTime": server_time},
        )
        data = self._ok_data(payload, "share token")
        token = data.get("token") if data else None
        if not token:
            logger.info("Legacy server issued no token for %s", device_id)
            return None
        self._tokens[device_id] = str(token)
        return self._tokens[device_id]

    async def _call(self, path: str, device_id: str, params: dict) -> dict | None:
        token = await self._token(device_id)
        if token is None:
            return None
        payload = await self._get_json(path, params=params, headers={"Authorization": token})
        data = self._ok_data(payload, path)
        if data is None:
            # Tokens expire server-side; the next call mints a fresh one
            self._tokens.pop(device_id, None)
        return data

    def _ok_data(self, payload: Any, what: str) -> dict | None:
        if payload is None:
            return None
        payload = require_mapping(self.source_id, payload, what)
        if _as_int(payload.get("returnValue")) != RETURN_OK:
            logger.debug("Legacy %s returned %s", what, payload.get("returnValue"))
            return None
        data = payload.get("data")
        if data is None or data == "":
            return None
        return require_mapping(self.source_id, data, f"{what} data")


def _nested(data: dict, key: str, field: str) -> Any:
    table = data.get(key)
    if not isinstance(table, dict):
        return None
    return table.get(field)


def _battery_totals(data: dict) -> tuple[Any, Any]:
    """Charge and discharge totals from ``bats[0]`` and ``bats[1]``."""
    bats = data.get("bats")
    if bats is None:
        return None, None
    if isinstance(bats, dict):
        # XML bodies collapse a repeated element into a list, a single one into a dict
        bats = [bats]
    if not isinstance(bats, list):
        raise UpstreamMalformed("legacy", "bats is not a list")
    charge = bats[0].get("tableValue") if len(bats) > 0 and isinstance(bats[0], dict) else None
    discharge = bats[1].get("tableValue") if len(bats) > 1 and isinstance(bats[1], dict) else None
    return charge, discharge


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
