"""Merged report models produced by the reconciliation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from inverter_gateway.errors import SourceAttempt
from inverter_gateway.live.sample import RealtimeSample
from inverter_gateway.sources.base import DayEnergySummary, DayPowerCurves, DeviceMeta, SocTimelinePoint

LIVE_ONLY = "live_only"


@dataclass
class MergedDeviceReport:
    """Reconciled view of one device on one date.

    Day energy, power curves, meta and the SOC timeline come from
    ``data_source``; the realtime block comes whole from
    ``realtime_source``. No field mixes two origins.
    """

    device_id: str
    query_date: date
    meta: DeviceMeta
    day_energy: DayEnergySummary
    data_source: str
    soc_timeline: list[SocTimelinePoint] = field(default_factory=list)
    power_curves: DayPowerCurves | None = None
    realtime: RealtimeSample | None = None
    realtime_source: str | None = None
    sources_tried: list[SourceAttempt] = field(default_factory=list)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_live_only(self) -> bool:
        return self.data_source == LIVE_ONLY

    def to_dict(self) -> dict:
        realtime = self.realtime
        return {
            "device_id": self.device_id,
            "date": self.query_date.isoformat(),
            "data_source": self.data_source,
            "realtime_source": self.realtime_source,
            "device": self.meta.to_dict(),
            "day_energy": self.day_energy.to_dict(),
            "soc_timeline": [p.to_dict() for p in self.soc_timeline],
            "power_curves": self.power_curves.to_dict() if self.power_curves else None,
            "realtime": realtime.to_dict() if realtime else None,
            "sample_age_seconds": round(realtime.age_seconds(), 1) if realtime else None,
            "sources_tried": [a.to_dict() for a in self.sources_tried],
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass
class MonthlyEnergy:
    month: str  # "YYYY-MM"
    days: int = 0
    pv_kwh: float = 0.0
    load_kwh: float = 0.0
    grid_kwh: float = 0.0
    battery_charge_kwh: float = 0.0
    battery_discharge_kwh: float = 0.0
    essential_load_kwh: float = 0.0

    def add(self, day: DayEnergySummary) -> None:
        self.days += 1
        self.pv_kwh = round(self.pv_kwh + day.pv_kwh, 1)
        self.load_kwh = round(self.load_kwh + day.load_kwh, 1)
        self.grid_kwh = round(self.grid_kwh + day.grid_kwh, 1)
        self.battery_charge_kwh = round(self.battery_charge_kwh + day.battery_charge_kwh, 1)
        self.battery_discharge_kwh = round(self.battery_discharge_kwh + day.battery_discharge_kwh, 1)
        self.essential_load_kwh = round(self.essential_load_kwh + day.essential_load_kwh, 1)

    def to_dict(self) -> dict:
        return {
            "month": self.month,
            "days": self.days,
            "pv_kwh": self.pv_kwh,
            "load_kwh": self.load_kwh,
            "grid_kwh": self.grid_kwh,
            "battery_charge_kwh": self.battery_charge_kwh,
            "battery_discharge_kwh": self.battery_discharge_kwh,
            "essential_load_kwh": self.essential_load_kwh,
        }


@dataclass
class EnergyRangeSummary:
    """Per-day energy over a date range with monthly totals."""

    device_id: str
    start: date
    end: date
    days: list[DayEnergySummary] = field(default_factory=list)
    months: dict[str, MonthlyEnergy] = field(default_factory=dict)
    missing_days: list[date] = field(default_factory=list)

    def add_day(self, summary: DayEnergySummary) -> None:
        self.days.append(summary)
        key = summary.date.strftime("%Y-%m")
        month = self.months.get(key)
        if month is None:
            month = self.months[key] = MonthlyEnergy(month=key)
        month.add(summary)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "from": self.start.isoformat(),
            "to": self.end.isoformat(),
            "days": [d.to_dict() for d in self.days],
            "months": [m.to_dict() for m in self.months.values()],
            "missing_days": [d.isoformat() for d in self.missing_days],
        }
