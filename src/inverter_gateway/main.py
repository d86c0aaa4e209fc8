"""Inverter Gateway application entry point and lifecycle orchestrator.

Startup sequence:
  config → logging → sources → cache/registry/fanout → MQTT + bridge →
  reconciliation engine → poll loop → HTTP server
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from pathlib import Path

from fastapi import FastAPI

from inverter_gateway import __version__
from inverter_gateway.config.manager import ConfigManager
from inverter_gateway.config.schema import AppConfig
from inverter_gateway.dashboard.app import create_app
from inverter_gateway.live.bridge import LiveTelemetryBridge
from inverter_gateway.live.cache import LiveCache
from inverter_gateway.live.fanout import FanoutPublisher
from inverter_gateway.live.registry import DeviceWatchRegistry
from inverter_gateway.logging.structured import setup_logging
from inverter_gateway.mqtt.client import MQTTClient
from inverter_gateway.reconcile.engine import ReconciliationEngine
from inverter_gateway.resilience.health_check import HealthChecker
from inverter_gateway.sources.base import UpstreamSource
from inverter_gateway.sources.providers.legacy import LegacySource
from inverter_gateway.sources.providers.mirror import MirrorSource
from inverter_gateway.sources.providers.new_vendor import NewVendorSource

logger = logging.getLogger(__name__)


class Application:
    """Main application lifecycle manager.

    Wires all modules together and manages startup/shutdown ordering.
    """

    def __init__(self, config: AppConfig, config_manager: ConfigManager | None = None) -> None:
        self.config = config
        self.config_manager = config_manager
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()

        # References held for cleanup
        self._sources: list[UpstreamSource] = []
        self._mqtt_client: MQTTClient | None = None
        self._server = None

        self.cache: LiveCache | None = None
        self.registry: DeviceWatchRegistry | None = None
        self.bridge: LiveTelemetryBridge | None = None
        self.engine: ReconciliationEngine | None = None
        self.health: HealthChecker | None = None
        self.app: FastAPI | None = None

    def build(self) -> FastAPI:
        """Construct every component and the FastAPI app without any I/O."""
        cfg = self.config

        # ── 1. Upstream sources ───────────────────────────────
        self._sources = self._create_sources()
        timeouts = {
            "new_vendor": cfg.sources.new_vendor.timeout_seconds,
            "mirror": cfg.sources.mirror.timeout_seconds,
            "legacy": cfg.sources.legacy.timeout_seconds,
        }

        # ── 2. Live state ─────────────────────────────────────
        self.cache = LiveCache()
        self.registry = DeviceWatchRegistry()
        fanout = FanoutPublisher(self.registry)

        # ── 3. Broker bridge ──────────────────────────────────
        self._mqtt_client = MQTTClient(cfg.mqtt)
        self.bridge = LiveTelemetryBridge(
            cfg.mqtt, cfg.live, self._mqtt_client, self.cache, self.registry, fanout,
            site_timezone=cfg.reconcile.timezone,
        )

        # ── 4. Reconciliation ─────────────────────────────────
        self.health = HealthChecker(cfg.resilience.max_consecutive_failures)
        self.engine = ReconciliationEngine(
            [*self._sources, self.bridge.as_source()],
            self.cache,
            self.registry,
            cfg.reconcile,
            cfg.live,
            timeouts=timeouts,
            health=self.health,
            live_enabled=cfg.mqtt.enabled,
        )

        # ── 5. HTTP surface ───────────────────────────────────
        self.app = create_app(
            cfg, self.engine, self.registry, self.cache, bridge=self.bridge, health=self.health,
        )
        self.app.state.application = self
        return self.app

    async def start(self) -> None:
        """Start all application components in dependency order."""
        logger.info("Starting Inverter Gateway v%s", __version__)
        self._running = True
        self._stop_event.clear()

        app = self.build()

        if self.config.mqtt.enabled:
            await self.bridge.connect()
            self._tasks.append(asyncio.create_task(
                self.bridge.run_poll_loop(self._stop_event), name="live-poll-loop",
            ))
        else:
            logger.info("MQTT disabled; live data limited to the mirror API")

        import uvicorn

        uvi_config = uvicorn.Config(
            app,
            host=self.config.dashboard.host,
            port=self.config.dashboard.port,
            log_level="warning",
        )
        server = uvicorn.Server(uvi_config)
        # Keep process signal handling in main() so Ctrl+C behaviour is predictable.
        server.install_signal_handlers = lambda: None
        self._server = server

        logger.info(
            "Gateway listening on http://%s:%d",
            self.config.dashboard.host,
            self.config.dashboard.port,
        )

        # Server.serve() blocks until shutdown
        await server.serve()

    async def stop(self) -> None:
        """Gracefully stop all components in reverse order."""
        if not self._running:
            return

        logger.info("Shutting down Inverter Gateway")
        self._running = False
        self._stop_event.set()

        # Tell uvicorn to exit its serve() loop.
        if self._server is not None:
            self._server.should_exit = True

        # Poll loop exits on the stop event; cancel covers anything stuck
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.bridge is not None:
            await self.bridge.disconnect()

        for source in self._sources:
            try:
                await source.close()
            except Exception:
                logger.exception("Error closing source %s", source.source_id)

        self._server = None
        logger.info("Shutdown complete")

    def _create_sources(self) -> list[UpstreamSource]:
        cfg = self.config.sources
        sign = self.config.live.battery_power_sign
        sources: list[UpstreamSource] = []
        if cfg.new_vendor.enabled:
            sources.append(NewVendorSource(cfg.new_vendor))
        if cfg.mirror.enabled:
            sources.append(MirrorSource(cfg.mirror, battery_power_sign=sign))
        if cfg.legacy.enabled:
            sources.append(LegacySource(cfg.legacy))
        logger.info("Upstream sources enabled: %s", [s.source_id for s in sources])
        return sources


def main() -> None:
    """Entry point for the application."""
    config_manager = ConfigManager(Path("config.defaults.yaml"))
    config = config_manager.load()

    setup_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.file,
    )

    app = Application(config, config_manager)
    stop_requested = False
    signal_count = 0

    async def _run() -> None:
        try:
            await app.start()
        finally:
            if app._running:
                with contextlib.suppress(Exception):
                    await app.stop()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _request_stop() -> None:
        nonlocal stop_requested, signal_count
        signal_count += 1
        if signal_count >= 2:
            os._exit(130)
        if stop_requested or loop.is_closed():
            return
        stop_requested = True
        loop.call_soon_threadsafe(lambda: asyncio.create_task(app.stop()))

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_stop)
    else:
        signal.signal(signal.SIGINT, lambda *_: _request_stop())
        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, lambda *_: _request_stop())

    try:
        loop.run_until_complete(_run())
    except KeyboardInterrupt:
        _request_stop()
        with contextlib.suppress(Exception):
            loop.run_until_complete(app.stop())
    finally:
        pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            with contextlib.suppress(Exception):
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


if __name__ == "__main__":
    main()
