"""Upstream source contract, shared data models and the adapter boundary.

Every upstream (vendor API, mirror API, live bridge) implements
``UpstreamSource``. The four ``fetch_*`` operations share one contract:

* return ``None`` (or an empty list) when the source has no data right now;
* raise ``CapabilityNotSupported`` when the source never offers the operation;
* raise ``UpstreamUnavailable`` / ``UpstreamMalformed`` on transport or parse
  failure.

``call_source`` is the boundary where the latter two are caught, logged and
collapsed to "absent" so that no per-source failure reaches the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable

from inverter_gateway.errors import (
    CapabilityNotSupported,
    SourceAttempt,
    UpstreamMalformed,
    UpstreamUnavailable,
)
from inverter_gateway.live.sample import RealtimeSample

logger = logging.getLogger(__name__)

SLOT_MINUTES = 5
MAX_SOC_POINTS = 24 * 60 // SLOT_MINUTES  # 288


class Capability(str, Enum):
    REALTIME = "realtime"
    DAY_ENERGY = "day_energy"
    SOC_TIMELINE = "soc_timeline"
    DEVICE_META = "device_meta"


def decawatt_hours_to_kwh(raw: Any) -> float:
    """Convert a vendor decawatt-hour integer to kWh.

    Adapters call this exactly once per value; nothing downstream rescales.
    """
    if raw is None or raw == "":
        return 0.0
    return round(float(raw) / 10.0, 1)


def slot_label(index: int) -> str:
    minutes = index * SLOT_MINUTES
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def curve_from_slots(values: Any) -> tuple[float | None, ...]:
    """Per-slot readings from 00:00, capped at one day of 5-minute slots.

    Slot positions are kept; a non-numeric slot becomes None.
    """
    if not isinstance(values, (list, tuple)):
        return ()
    curve: list[float | None] = []
    for value in values[:MAX_SOC_POINTS]:
        try:
            curve.append(None if value is None or isinstance(value, bool) else float(value))
        except (TypeError, ValueError):
            curve.append(None)
    return tuple(curve)


@dataclass(frozen=True)
class DayPowerCurves:
    """Power through the day (W) on the 5-minute slot grid, per flow."""

    pv: tuple[float | None, ...] = ()
    battery: tuple[float | None, ...] = ()
    grid: tuple[float | None, ...] = ()
    home_load: tuple[float | None, ...] = ()
    essential_load: tuple[float | None, ...] = ()

    def __bool__(self) -> bool:
        return any((self.pv, self.battery, self.grid, self.home_load, self.essential_load))

    def to_dict(self) -> dict:
        slots = max(len(self.pv), len(self.battery), len(self.grid),
                    len(self.home_load), len(self.essential_load))
        return {
            "interval_minutes": SLOT_MINUTES,
            "labels": [slot_label(i) for i in range(slots)],
            "pv": list(self.pv),
            "battery": list(self.battery),
            "grid": list(self.grid),
            "home_load": list(self.home_load),
            "essential_load": list(self.essential_load),
        }


@dataclass(frozen=True)
class DayEnergySummary:
    """Energy totals for one device on one date (kWh).

    ``curves`` rides along from the same source when it has them; range
    summaries leave them out.
    """

    device_id: str
    date: date
    pv_kwh: float = 0.0
    load_kwh: float = 0.0
    grid_kwh: float = 0.0
    battery_charge_kwh: float = 0.0
    battery_discharge_kwh: float = 0.0
    essential_load_kwh: float = 0.0
    source_id: str = ""
    curves: DayPowerCurves | None = field(default=None, compare=False, repr=False)

    @classmethod
    def empty(cls, device_id: str, day: date, source_id: str = "") -> DayEnergySummary:
        return cls(device_id=device_id, date=day, source_id=source_id)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "date": self.date.isoformat(),
            "pv_kwh": self.pv_kwh,
            "load_kwh": self.load_kwh,
            "grid_kwh": self.grid_kwh,
            "battery_charge_kwh": self.battery_charge_kwh,
            "battery_discharge_kwh": self.battery_discharge_kwh,
            "essential_load_kwh": self.essential_load_kwh,
            "source_id": self.source_id,
        }


@dataclass(frozen=True)
class SocTimelinePoint:
    time: str  # "HH:MM" local label
    soc: float

    def to_dict(self) -> dict:
        return {"t": self.time, "soc": self.soc}


def build_soc_timeline(points: list[tuple[str, float]]) -> list[SocTimelinePoint]:
    """Build a timeline holding at most 288 strictly increasing points.

    Labels that are malformed, off the 5-minute grid or not after the
    previous point are dropped.
    """
    timeline: list[SocTimelinePoint] = []
    last_minutes = -1
    for label, soc in points:
        try:
            hh, mm = label.split(":")
            minutes = int(hh) * 60 + int(mm)
        except (ValueError, AttributeError):
            logger.debug("Dropping malformed SOC label %r", label)
            continue
        if minutes % SLOT_MINUTES or minutes >= 24 * 60 or minutes <= last_minutes:
            continue
        timeline.append(SocTimelinePoint(time=f"{minutes // 60:02d}:{minutes % 60:02d}", soc=soc))
        last_minutes = minutes
        if len(timeline) == MAX_SOC_POINTS:
            break
    return timeline


def timeline_from_slots(values: list[Any]) -> list[SocTimelinePoint]:
    """Timeline from a list of per-slot values starting at 00:00."""
    points: list[tuple[str, float]] = []
    for i, value in enumerate(values[:MAX_SOC_POINTS]):
        if value is None:
            continue
        points.append((slot_label(i), float(value)))
    return build_soc_timeline(points)


@dataclass(frozen=True)
class DeviceMeta:
    device_id: str
    device_type: str = ""
    online: bool = False
    remark_name: str = ""

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "device_type": self.device_type,
            "online": self.online,
            "remark_name": self.remark_name,
        }


class UpstreamSource(ABC):
    """Abstract base for one upstream data source.

    Subclasses override the operations they support and list them in
    ``capabilities``; the defaults raise ``CapabilityNotSupported``.
    """

    source_id: str = "unknown"
    capabilities: frozenset[Capability] = frozenset()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    async def fetch_realtime(self, device_id: str) -> RealtimeSample | None:
        raise CapabilityNotSupported(self.source_id, Capability.REALTIME.value)

    async def fetch_day_energy(self, device_id: str, day: date) -> DayEnergySummary | None:
        raise CapabilityNotSupported(self.source_id, Capability.DAY_ENERGY.value)

    async def fetch_soc_timeline(self, device_id: str, day: date) -> list[SocTimelinePoint]:
        raise CapabilityNotSupported(self.source_id, Capability.SOC_TIMELINE.value)

    async def fetch_device_meta(self, device_id: str) -> DeviceMeta | None:
        raise CapabilityNotSupported(self.source_id, Capability.DEVICE_META.value)

    async def close(self) -> None:
        return None


@dataclass
class SourceResult:
    """Value (or absence) returned by one source call, plus its outcome."""

    value: Any = None
    attempt: SourceAttempt = field(default_factory=lambda: SourceAttempt("unknown", "absent"))

    @property
    def ok(self) -> bool:
        return self.attempt.outcome == "ok"


async def call_source(
    source: UpstreamSource,
    capability: Capability,
    call: Callable[[], Awaitable[Any]],
    timeout: float | None,
    device_id: str = "",
) -> SourceResult:
    """Run one source operation at the adapter boundary.

    Never raises for upstream trouble: timeouts, transport errors, parse
    errors and unsupported operations all become an absent result with the
    reason recorded. Cancellation still propagates.
    """
    started = time.monotonic()

    def _result(value: Any, outcome: str) -> SourceResult:
        elapsed = int((time.monotonic() - started) * 1000)
        return SourceResult(value, SourceAttempt(source.source_id, outcome, elapsed))

    if not source.supports(capability):
        return _result(None, "unsupported")
    if timeout is not None and timeout <= 0:
        return _result(None, "skipped")

    try:
        if timeout is None:
            value = await call()
        else:
            value = await asyncio.wait_for(call(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "Source %s timed out on %s for %s after %.1fs",
            source.source_id, capability.value, device_id, timeout,
        )
        return _result(None, "timeout")
    except CapabilityNotSupported:
        return _result(None, "unsupported")
    except (ValueError, TypeError, KeyError) as e:
        logger.warning("Source %s sent unusable %s data for %s: %s", source.source_id, capability.value, device_id, e)
        return _result(None, "malformed")
    except UpstreamMalformed as e:
        logger.warning("Source %s returned malformed %s data: %s", source.source_id, capability.value, e)
        return _result(None, "malformed")
    except UpstreamUnavailable as e:
        logger.warning("Source %s unavailable for %s: %s", source.source_id, capability.value, e)
        return _result(None, "unavailable")
    except Exception:
        # An adapter bug must not abort the chain either
        logger.exception("Source %s raised on %s for %s", source.source_id, capability.value, device_id)
        return _result(None, "unavailable")

    if value is None or (isinstance(value, list) and not value):
        return _result(value, "absent")
    return _result(value, "ok")
