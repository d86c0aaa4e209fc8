"""Realtime sample data model and device id validation."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum

from inverter_gateway.errors import InvalidInput

MAX_DEVICE_ID_LENGTH = 64

# MQTT wildcards and the topic separator cannot appear in an id that is
# substituted into topic templates and URL paths.
_FORBIDDEN_ID_CHARS = re.compile(r"[/+#\s\x00-\x1f\x7f]")


def validate_device_id(device_id: object) -> str:
    """Return the device id unchanged if valid, else raise InvalidInput.

    Device ids are opaque and case-sensitive; no vendor prefix is assumed.
    """
    if not isinstance(device_id, str) or not device_id.strip():
        raise InvalidInput("Device ID is required")
    if len(device_id) > MAX_DEVICE_ID_LENGTH:
        raise InvalidInput(f"Device ID longer than {MAX_DEVICE_ID_LENGTH} characters")
    if _FORBIDDEN_ID_CHARS.search(device_id):
        raise InvalidInput("Device ID contains forbidden characters")
    return device_id


class BatteryStatus(str, Enum):
    CHARGING = "Charging"
    DISCHARGING = "Discharging"
    IDLE = "Idle"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: object) -> BatteryStatus:
        """Map a vendor status string onto the enum (case-insensitive)."""
        if isinstance(raw, BatteryStatus):
            return raw
        if not isinstance(raw, str):
            return cls.UNKNOWN
        text = raw.strip().lower()
        if text.startswith("charg"):
            return cls.CHARGING
        if text.startswith("discharg"):
            return cls.DISCHARGING
        if text in ("idle", "standby", "none"):
            return cls.IDLE
        return cls.UNKNOWN


DISCHARGE_POSITIVE = "discharge_positive"
CHARGE_POSITIVE = "charge_positive"


def normalise_battery_power(
    power_w: float | None,
    status: object,
    convention: str = DISCHARGE_POSITIVE,
) -> tuple[float | None, BatteryStatus]:
    """Bring a raw battery power reading onto the configured sign convention.

    A recognised status string decides the direction and the magnitude of
    ``power_w`` is used. Without one, the raw sign is taken as already being
    in the configured convention and the status is derived from it.
    """
    parsed = BatteryStatus.parse(status)
    if power_w is None:
        return None, parsed

    if parsed in (BatteryStatus.CHARGING, BatteryStatus.DISCHARGING):
        magnitude = abs(power_w)
        discharging = parsed == BatteryStatus.DISCHARGING
        positive = discharging if convention == DISCHARGE_POSITIVE else not discharging
        return (magnitude if positive else -magnitude), parsed

    if power_w == 0:
        return power_w, BatteryStatus.IDLE if parsed == BatteryStatus.UNKNOWN else parsed

    positive_means = (
        BatteryStatus.DISCHARGING if convention == DISCHARGE_POSITIVE else BatteryStatus.CHARGING
    )
    negative_means = (
        BatteryStatus.CHARGING if convention == DISCHARGE_POSITIVE else BatteryStatus.DISCHARGING
    )
    return power_w, positive_means if power_w > 0 else negative_means


def derive_grid_status(grid_power_w: float | None) -> str | None:
    """Positive grid power = importing."""
    if grid_power_w is None:
        return None
    if grid_power_w > 0:
        return "Importing"
    if grid_power_w < 0:
        return "Exporting"
    return "Idle"


@dataclass(frozen=True)
class RealtimeSample:
    """Complete snapshot of one device's live telemetry.

    ``None`` means the field is unknown; ``0`` is a real reading.
    """

    device_id: str
    # Device-reported time, may be skewed
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Gateway clock when the sample came in; freshness is judged on this
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    battery_soc: float | None = None  # percent, 0-100
    battery_voltage: float | None = None
    battery_power_w: float | None = None  # sign per live.battery_power_sign
    battery_status: BatteryStatus = BatteryStatus.UNKNOWN
    grid_power_w: float | None = None  # Positive = importing
    grid_status: str | None = None
    home_load_w: float | None = None
    pv_total_w: float | None = None
    pv1_w: float | None = None
    pv2_w: float | None = None
    pv1_voltage: float | None = None
    pv2_voltage: float | None = None
    temperature_c: float | None = None
    ac_output_w: float | None = None
    ac_input_voltage: float | None = None
    # Position i is cell i+1; None marks a cell without a numeric reading
    cell_voltages: tuple[float | None, ...] = ()

    def __post_init__(self) -> None:
        if self.battery_soc is not None:
            object.__setattr__(self, "battery_soc", min(100.0, max(0.0, float(self.battery_soc))))
        if not isinstance(self.cell_voltages, tuple):
            object.__setattr__(self, "cell_voltages", tuple(self.cell_voltages))

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.received_at).total_seconds()

    @property
    def cell_stats(self) -> dict | None:
        """Min/max/average/spread over cells with a reading, or None."""
        cells = [v for v in self.cell_voltages if v is not None]
        if not cells:
            return None
        return {
            "number_of_cells": len(self.cell_voltages),
            "reporting_cells": len(cells),
            "average_voltage": round(sum(cells) / len(cells), 3),
            "min_voltage": min(cells),
            "max_voltage": max(cells),
            "voltage_difference": round(max(cells) - min(cells), 3),
        }

    def to_dict(self) -> dict:
        data = asdict(self)
        data["captured_at"] = self.captured_at.isoformat()
        data["received_at"] = self.received_at.isoformat()
        data["battery_status"] = self.battery_status.value
        data["cell_voltages"] = list(self.cell_voltages)
        data["cells"] = self.cell_stats
        return data


def _num(value: object) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _cell_order(key: str) -> tuple[bool, int]:
    # Unnumbered keys sort after every numbered cell, in arrival order
    digits = "".join(ch for ch in key if ch.isdigit())
    return (False, int(digits)) if digits else (True, 0)


def ordered_cell_voltages(raw: object) -> tuple[float | None, ...]:
    """Cell voltages in cell order from a list or a ``{"cell_03": 3.3}`` map.

    Every entry keeps its position: zero stays 0.0 and a null or
    non-numeric reading becomes None.
    """
    if isinstance(raw, dict):
        items = sorted(raw.items(), key=lambda kv: _cell_order(str(kv[0])))
        values = [v for _, v in items]
    elif isinstance(raw, (list, tuple)):
        values = list(raw)
    else:
        return ()
    return tuple(_num(value) for value in values)


def sample_from_fields(
    device_id: str,
    data: dict,
    cells: object = None,
    captured_at: datetime | None = None,
    convention: str = DISCHARGE_POSITIVE,
) -> RealtimeSample:
    """Build a sample from the camelCase field set shared by the mirror API
    and the broker payloads."""
    battery_power, battery_status = normalise_battery_power(
        _num(data.get("batteryPower")),
        data.get("batteryStatus"),
        convention,
    )
    grid_power = _num(data.get("gridPowerFlow"))
    if cells is None:
        cells = data.get("cellVoltages")
    return RealtimeSample(
        device_id=device_id,
        captured_at=captured_at or datetime.now(timezone.utc),
        battery_soc=_num(data.get("batterySoc")),
        battery_voltage=_num(data.get("batteryVoltage")),
        battery_power_w=battery_power,
        battery_status=battery_status,
        grid_power_w=grid_power,
        grid_status=data.get("gridStatus") or derive_grid_status(grid_power),
        home_load_w=_num(data.get("homeLoad")),
        pv_total_w=_num(data.get("totalPvPower")),
        pv1_w=_num(data.get("pv1Power")),
        pv2_w=_num(data.get("pv2Power")),
        pv1_voltage=_num(data.get("pv1Voltage")),
        pv2_voltage=_num(data.get("pv2Voltage")),
        temperature_c=_num(data.get("temperature")),
        ac_output_w=_num(data.get("acOutputPower")),
        ac_input_voltage=_num(data.get("acInputVoltage")),
        cell_voltages=ordered_cell_voltages(cells),
    )


def parse_timestamp(raw: object, naive_tz: tzinfo = timezone.utc) -> datetime | None:
    """Parse an ISO-8601 or epoch timestamp into an aware UTC datetime.

    A string without an offset is read as wall-clock time in ``naive_tz``,
    normally the inverter site's zone.
    """
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        seconds = raw / 1000 if raw > 1e12 else raw
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=naive_tz)
    return parsed.astimezone(timezone.utc)
