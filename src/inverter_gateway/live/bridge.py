"""Live telemetry bridge between the broker and the live cache.

Owns the broker connection, asks watched devices to push samples on a
fixed cycle and turns every report into one cache write followed by one
fan-out.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timezone
from typing import Any

from inverter_gateway.config.schema import LiveConfig, MQTTConfig
from inverter_gateway.errors import UpstreamMalformed
from inverter_gateway.live.cache import LiveCache
from inverter_gateway.live.fanout import FanoutPublisher
from inverter_gateway.live.registry import DeviceWatchRegistry
from inverter_gateway.live.sample import RealtimeSample
from inverter_gateway.logging.context import device_context
from inverter_gateway.mqtt import codec, topics
from inverter_gateway.sources.base import Capability, UpstreamSource
from inverter_gateway.timezone_utils import resolve_timezone

logger = logging.getLogger(__name__)

LIVE_SOURCE_ID = "live"


class LiveTelemetryBridge:
    """Broker bridge; the only writer of LiveCache entries."""

    def __init__(
        self,
        mqtt_config: MQTTConfig,
        live_config: LiveConfig,
        transport: Any,
        cache: LiveCache,
        registry: DeviceWatchRegistry,
        fanout: FanoutPublisher,
        site_timezone: str | None = None,
    ) -> None:
        self._mqtt_config = mqtt_config
        self._live_config = live_config
        self._transport = transport
        self._cache = cache
        self._registry = registry
        self._fanout = fanout
        # Offset-less report timestamps are wall-clock time at the site
        self._site_tz = resolve_timezone(site_timezone) if site_timezone else timezone.utc
        self._connected = False
        self._samples_received = 0
        self._malformed_reports = 0
        self._last_sample_at: float | None = None
        self._last_cycle_at: float | None = None

        # First subscriber gets a sample request right away
        registry.set_first_watch_hook(self.request_sample)

    @property
    def is_connected(self) -> bool:
        return self._connected and self._transport.is_connected

    async def connect(self) -> None:
        """Subscribe to device reports and open the broker connection."""
        if self._connected:
            return
        self._transport.subscribe(
            topics.report_filter(self._mqtt_config.report_topic), self.handle_message,
        )
        self._connected = True
        await self._transport.connect()

    async def disconnect(self) -> None:
        """Close the broker connection; safe to call when never connected."""
        if not self._connected:
            return
        self._connected = False
        try:
            await asyncio.wait_for(
                self._transport.disconnect(),
                timeout=self._mqtt_config.disconnect_grace_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Broker disconnect exceeded %.1fs grace", self._mqtt_config.disconnect_grace_seconds)

    async def request_sample(self, device_id: str) -> bool:
        """Ask a device to push a fresh report. Never raises."""
        if not self.is_connected:
            logger.debug("Sample request for %s skipped: broker not connected", device_id)
            return False
        topic = topics.request_topic(self._mqtt_config.request_topic, device_id)
        try:
            return bool(await self._transport.publish(topic, codec.encode_sample_request(device_id)))
        except Exception:
            logger.exception("Sample request for %s failed", device_id)
            return False

    async def handle_message(self, topic: str, payload: bytes) -> RealtimeSample | None:
        """Decode one report, store it, then notify subscribers."""
        device_id = topics.device_from_topic(self._mqtt_config.report_topic, topic)
        if device_id is None:
            logger.debug("Ignoring message on unexpected topic %s", topic)
            return None
        with device_context(device_id, topic=topic):
            try:
                sample = codec.decode_report(
                    device_id, payload, self._live_config.battery_power_sign, self._site_tz,
                )
            except UpstreamMalformed as e:
                self._malformed_reports += 1
                logger.warning("Dropping malformed report for %s: %s", device_id, e)
                return None

            self._cache.put(device_id, sample)
            delivered = self._fanout.publish(device_id, sample)
            logger.debug("Report for %s delivered to %d subscribers", device_id, delivered)
        self._samples_received += 1
        self._last_sample_at = time.time()
        return sample

    async def run_poll_loop(self, stop_event: asyncio.Event) -> None:
        """Request samples for every watched device once per poll cycle.

        All pauses wait on ``stop_event`` so setting it ends the loop within
        one inter-device delay.
        """
        cycle = self._live_config.poll_cycle_seconds
        spacing = self._live_config.inter_device_delay_seconds
        logger.info("Live poll loop started (cycle=%.1fs)", cycle)

        while not stop_event.is_set():
            started = time.monotonic()
            self._last_cycle_at = time.time()
            for device_id in self._registry.watched_devices():
                if stop_event.is_set():
                    break
                # Unwatched while this cycle was running
                if not self._registry.is_watched(device_id):
                    continue
                await self.request_sample(device_id)
                if await _wait(stop_event, spacing):
                    break

            remaining = cycle - (time.monotonic() - started)
            if await _wait(stop_event, max(remaining, 0.0)):
                break

        logger.info("Live poll loop stopped")

    def as_source(self) -> UpstreamSource:
        return LiveSource(self._cache, self._live_config.max_sample_age_seconds)

    def status(self) -> dict:
        return {
            "connected": self.is_connected,
            "watched_devices": len(self._registry.watched_devices()),
            "cached_devices": len(self._cache),
            "samples_received": self._samples_received,
            "malformed_reports": self._malformed_reports,
            "last_sample_at": self._last_sample_at,
            "last_cycle_at": self._last_cycle_at,
        }


class LiveSource(UpstreamSource):
    """The live cache seen as a realtime-only upstream."""

    source_id = LIVE_SOURCE_ID
    capabilities = frozenset({Capability.REALTIME})

    def __init__(self, cache: LiveCache, max_age_seconds: float) -> None:
        self._cache = cache
        self._max_age = max_age_seconds

    async def fetch_realtime(self, device_id: str) -> RealtimeSample | None:
        return self._cache.get_fresh(device_id, self._max_age)


async def _wait(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; True if the stop event fired."""
    if seconds <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True
