"""Shared test fixtures for Inverter Gateway."""

from __future__ import annotations

import asyncio
from datetime import date
from pathlib import Path
from typing import Any

import pytest

from inverter_gateway.config.manager import ConfigManager
from inverter_gateway.config.schema import AppConfig, LiveConfig, ReconcileConfig
from inverter_gateway.live.cache import LiveCache
from inverter_gateway.live.fanout import FanoutPublisher
from inverter_gateway.live.registry import DeviceWatchRegistry
from inverter_gateway.live.sample import BatteryStatus, RealtimeSample
from inverter_gateway.sources.base import (
    Capability,
    DayEnergySummary,
    DeviceMeta,
    SocTimelinePoint,
    UpstreamSource,
)


class FakeSource(UpstreamSource):
    """Scriptable upstream source recording every call.

    Each ``*_result`` may be a value, None, or an exception instance to raise;
    ``day_energy`` may also be a ``(device_id, day)`` callable.
    ``delay`` makes every call sleep first.
    """

    def __init__(
        self,
        source_id: str,
        capabilities: set[Capability] | None = None,
        day_energy: Any = None,
        meta: Any = None,
        soc: Any = None,
        realtime: Any = None,
        delay: float = 0.0,
    ) -> None:
        self.source_id = source_id
        self.capabilities = frozenset(capabilities if capabilities is not None else {
            Capability.DAY_ENERGY, Capability.DEVICE_META,
        })
        self.day_energy_result = day_energy
        self.meta_result = meta
        self.soc_result = soc
        self.realtime_result = realtime
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    async def _answer(self, op: str, device_id: str, result: Any) -> Any:
        self.calls.append((op, device_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_day_energy(self, device_id: str, day: date) -> DayEnergySummary | None:
        if Capability.DAY_ENERGY not in self.capabilities:
            return await super().fetch_day_energy(device_id, day)
        result = self.day_energy_result
        if callable(result):
            result = result(device_id, day)
        return await self._answer("day_energy", device_id, result)

    async def fetch_device_meta(self, device_id: str) -> DeviceMeta | None:
        if Capability.DEVICE_META not in self.capabilities:
            return await super().fetch_device_meta(device_id)
        return await self._answer("meta", device_id, self.meta_result)

    async def fetch_soc_timeline(self, device_id: str, day: date) -> list[SocTimelinePoint]:
        if Capability.SOC_TIMELINE not in self.capabilities:
            return await super().fetch_soc_timeline(device_id, day)
        return await self._answer("soc", device_id, self.soc_result or [])

    async def fetch_realtime(self, device_id: str) -> RealtimeSample | None:
        if Capability.REALTIME not in self.capabilities:
            return await super().fetch_realtime(device_id)
        return await self._answer("realtime", device_id, self.realtime_result)

    async def close(self) -> None:
        self.closed = True

    def ops(self) -> list[str]:
        return [op for op, _ in self.calls]


def make_energy(device_id: str = "P250801055", source_id: str = "a", pv: float = 12.3, **kw: Any) -> DayEnergySummary:
    return DayEnergySummary(
        device_id=device_id,
        date=kw.pop("day", date(2025, 1, 15)),
        pv_kwh=pv,
        load_kwh=kw.pop("load", 8.4),
        grid_kwh=kw.pop("grid", 1.2),
        battery_charge_kwh=kw.pop("charge", 4.0),
        battery_discharge_kwh=kw.pop("discharge", 3.5),
        essential_load_kwh=kw.pop("essential", 0.6),
        source_id=source_id,
    )


def make_sample(device_id: str = "P250801055", soc: float = 55.0, **kw: Any) -> RealtimeSample:
    return RealtimeSample(
        device_id=device_id,
        battery_soc=soc,
        battery_voltage=kw.pop("battery_voltage", 52.1),
        battery_power_w=kw.pop("battery_power_w", 850.0),
        battery_status=kw.pop("battery_status", BatteryStatus.DISCHARGING),
        grid_power_w=kw.pop("grid_power_w", 0.0),
        home_load_w=kw.pop("home_load_w", 1200.0),
        pv_total_w=kw.pop("pv_total_w", 350.0),
        cell_voltages=kw.pop("cell_voltages", (3.31, 3.32, 3.30, 0.0, 3.31)),
        **kw,
    )


@pytest.fixture
def config() -> AppConfig:
    """Provide a default test configuration."""
    return AppConfig()


@pytest.fixture
def config_manager(tmp_path: Path) -> ConfigManager:
    """Provide a config manager with test paths."""
    defaults = tmp_path / "config.defaults.yaml"
    defaults.write_text("mqtt:\n  enabled: false\n")
    user = tmp_path / "config.yaml"
    mgr = ConfigManager(defaults_path=defaults, user_path=user, environ={})
    mgr.load()
    return mgr


@pytest.fixture
def fast_reconcile() -> ReconcileConfig:
    """Reconcile policy with a short bounded wait (0.1s x 6)."""
    return ReconcileConfig(
        day_energy_priority=["a", "b", "c"],
        soc_priority=["a", "b"],
        realtime_priority=["b", "live"],
        wait_poll_interval_seconds=0.1,
        wait_max_attempts=6,
    )


@pytest.fixture
def live_config() -> LiveConfig:
    return LiveConfig(poll_cycle_seconds=0.2, inter_device_delay_seconds=0.01)


@pytest.fixture
def cache() -> LiveCache:
    return LiveCache()


@pytest.fixture
def registry() -> DeviceWatchRegistry:
    return DeviceWatchRegistry()


@pytest.fixture
def fanout(registry: DeviceWatchRegistry) -> FanoutPublisher:
    return FanoutPublisher(registry)
