"""Inverter Gateway: multi-source inverter telemetry reconciliation and live fan-out."""

try:
    from importlib.metadata import version as _pkg_version
    __version__ = _pkg_version("inverter-gateway")
except Exception:
    __version__ = "dev"
