"""Error taxonomy for the gateway.

Upstream errors are recovered locally by the fallback chain. Only
``DeviceNotFound`` and ``InvalidInput`` are surfaced to callers.
"""

from __future__ import annotations

from dataclasses import dataclass


class GatewayError(Exception):
    """Base class for all gateway errors."""


class UpstreamError(GatewayError):
    """A single upstream source failed to produce a usable answer."""

    def __init__(self, source_id: str, message: str = "") -> None:
        self.source_id = source_id
        super().__init__(f"{source_id}: {message}" if message else source_id)


class UpstreamUnavailable(UpstreamError):
    """Network error, timeout or non-2xx status from one source."""


class UpstreamMalformed(UpstreamError):
    """The source answered but the payload could not be parsed."""


class CapabilityNotSupported(GatewayError):
    """The source does not implement the requested operation at all."""

    def __init__(self, source_id: str, capability: str) -> None:
        self.source_id = source_id
        self.capability = capability
        super().__init__(f"{source_id} does not support {capability}")


class InvalidInput(GatewayError):
    """Empty or malformed device id (or other request parameter)."""


@dataclass
class SourceAttempt:
    """Outcome of one source in a fallback chain."""

    source_id: str
    outcome: str  # "ok", "absent", "unavailable", "malformed", "unsupported", "timeout", "skipped"
    elapsed_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "source": self.source_id,
            "outcome": self.outcome,
            "elapsed_ms": self.elapsed_ms,
        }


class DeviceNotFound(GatewayError):
    """No source and no live sample produced data for the device."""

    def __init__(
        self,
        device_id: str,
        sources_tried: list[SourceAttempt] | None = None,
        live_polling_attempted: bool = False,
        waited_seconds: float = 0.0,
    ) -> None:
        self.device_id = device_id
        self.sources_tried = list(sources_tried or [])
        self.live_polling_attempted = live_polling_attempted
        self.waited_seconds = waited_seconds
        super().__init__(f"No data found for device {device_id!r}")

    def to_dict(self) -> dict:
        """Diagnostic payload safe to return to clients (no URLs, no credentials)."""
        return {
            "error": str(self),
            "code": "DEVICE_NOT_FOUND",
            "device_id": self.device_id,
            "sources_tried": [a.to_dict() for a in self.sources_tried],
            "live_polling_attempted": self.live_polling_attempted,
            "waited_seconds": round(self.waited_seconds, 1),
            "suggestions": [
                "Check that the device id is correct (ids are case-sensitive)",
                "Make sure the device is online and connected to the internet",
                "Retry in a few seconds; the first live sample can take a moment to arrive",
            ],
        }


__all__ = [
    "CapabilityNotSupported",
    "DeviceNotFound",
    "GatewayError",
    "InvalidInput",
    "SourceAttempt",
    "UpstreamError",
    "UpstreamMalformed",
    "UpstreamUnavailable",
]