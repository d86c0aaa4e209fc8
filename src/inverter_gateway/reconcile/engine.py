"""Fallback chain that reconciles upstream sources and live data."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Iterable

from inverter_gateway.config.schema import LiveConfig, ReconcileConfig
from inverter_gateway.errors import DeviceNotFound, InvalidInput, SourceAttempt
from inverter_gateway.live.bridge import LIVE_SOURCE_ID
from inverter_gateway.live.cache import LiveCache
from inverter_gateway.live.fanout import SubscriberHandle
from inverter_gateway.live.registry import DeviceWatchRegistry
from inverter_gateway.live.sample import RealtimeSample, validate_device_id
from inverter_gateway.reconcile.report import LIVE_ONLY, EnergyRangeSummary, MergedDeviceReport
from inverter_gateway.resilience.health_check import HealthChecker
from inverter_gateway.sources.base import (
    Capability,
    DayEnergySummary,
    DeviceMeta,
    SocTimelinePoint,
    SourceResult,
    UpstreamSource,
    call_source,
)

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_TIMEOUT = 15.0
SUMMARY_CONCURRENCY = 4


class _Budget:
    """Remaining time under an optional hard ceiling.

    ``None`` means no ceiling; zero or less is already spent.
    """

    def __init__(self, seconds: float | None) -> None:
        self._deadline = None if seconds is None else time.monotonic() + max(seconds, 0.0)

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def cap(self, timeout: float) -> float:
        remaining = self.remaining()
        return timeout if remaining is None else min(timeout, remaining)


class ReconciliationEngine:
    """Queries sources in priority order and merges the winner with live data.

    Priority lists name sources by ``source_id``; ids without a configured
    source are skipped. Per-source failures only ever mean "try the next
    one"; the caller sees ``DeviceNotFound`` or ``InvalidInput`` and
    nothing else.
    """

    def __init__(
        self,
        sources: Iterable[UpstreamSource],
        cache: LiveCache,
        registry: DeviceWatchRegistry,
        config: ReconcileConfig,
        live_config: LiveConfig,
        timeouts: dict[str, float] | None = None,
        health: HealthChecker | None = None,
        live_enabled: bool = True,
    ) -> None:
        self._sources = {s.source_id: s for s in sources}
        self._cache = cache
        self._registry = registry
        self._config = config
        self._live_config = live_config
        self._timeouts = timeouts or {}
        self._health = health
        # Without a broker nothing can answer a sample request
        self._live_enabled = live_enabled

        for source_id in self._sources:
            if health is not None:
                health.register(source_id)
        for name in ("day_energy_priority", "soc_priority", "realtime_priority"):
            missing = [sid for sid in getattr(config, name) if sid not in self._sources]
            if missing:
                logger.info("Sources %s in %s are not configured and will be skipped", missing, name)
        unable = [s.source_id for s in self._chain(config.day_energy_priority)
                  if not s.supports(Capability.DAY_ENERGY)]
        if unable:
            logger.warning("Sources %s in day_energy_priority serve no day energy", unable)

    @property
    def config(self) -> ReconcileConfig:
        return self._config

    def _request_budget(self, deadline_s: float | None = None) -> _Budget:
        if deadline_s is not None:
            return _Budget(deadline_s)
        # Configured 0 means no ceiling
        return _Budget(self._config.request_deadline_seconds or None)

    # ── Merged report ─────────────────────────────────────────

    async def get_device_data(
        self,
        device_id: str,
        day: date,
        *,
        deadline_s: float | None = None,
    ) -> MergedDeviceReport:
        """Reconciled report for one device and date.

        Raises InvalidInput before any source is contacted, and
        DeviceNotFound once the chain and the bounded live wait are
        exhausted.
        """
        validate_device_id(device_id)
        budget = self._request_budget(deadline_s)
        attempts: list[SourceAttempt] = []

        for source in self._chain(self._config.day_energy_priority):
            energy, meta = await asyncio.gather(
                self._call(source, Capability.DAY_ENERGY, lambda s=source: s.fetch_day_energy(device_id, day), budget, device_id),
                self._call(source, Capability.DEVICE_META, lambda s=source: s.fetch_device_meta(device_id), budget, device_id),
            )
            attempts.append(energy.attempt)
            if energy.ok:
                logger.info("Day energy for %s on %s served by %s", device_id, day, source.source_id)
                return await self._winner_report(device_id, day, source, energy.value, meta.value, attempts, budget)

        live = self._cache.get_fresh(device_id, self._live_config.max_sample_age_seconds)
        if live is not None:
            logger.info("No day energy source for %s; serving cached live data", device_id)
            return self._live_only_report(device_id, day, live, attempts)

        cap = budget.cap(self._config.wait_poll_interval_seconds * self._config.wait_max_attempts)
        polled = self._live_enabled and cap > 0
        started = time.monotonic()
        if polled:
            live = await self._wait_for_live(device_id, cap)
            if live is not None:
                logger.info("Live sample for %s arrived after %.1fs", device_id, time.monotonic() - started)
                return self._live_only_report(device_id, day, live, attempts)
        waited = time.monotonic() - started

        logger.warning("No data for %s after %.1fs wait; tried %s", device_id, waited,
                       [f"{a.source_id}:{a.outcome}" for a in attempts])
        raise DeviceNotFound(
            device_id,
            sources_tried=attempts,
            live_polling_attempted=polled,
            waited_seconds=waited,
        )

    async def _winner_report(
        self,
        device_id: str,
        day: date,
        winner: UpstreamSource,
        energy: DayEnergySummary,
        meta: DeviceMeta | None,
        attempts: list[SourceAttempt],
        budget: _Budget,
    ) -> MergedDeviceReport:
        timeline: list[SocTimelinePoint] = []
        if winner.supports(Capability.SOC_TIMELINE):
            result = await self._call(
                winner, Capability.SOC_TIMELINE,
                lambda: winner.fetch_soc_timeline(device_id, day), budget, device_id,
            )
            timeline = result.value or []

        # Realtime block comes whole from the live cache or whole from the winner
        realtime = self._cache.get_fresh(device_id, self._live_config.max_sample_age_seconds)
        realtime_source = LIVE_SOURCE_ID if realtime is not None else None
        if realtime is None and winner.supports(Capability.REALTIME):
            result = await self._call(
                winner, Capability.REALTIME,
                lambda: winner.fetch_realtime(device_id), budget, device_id,
            )
            if result.ok:
                realtime, realtime_source = result.value, winner.source_id

        if meta is None:
            meta = DeviceMeta(
                device_id=device_id,
                device_type=self._config.default_device_type,
                online=realtime is not None,
            )

        return MergedDeviceReport(
            device_id=device_id,
            query_date=day,
            meta=meta,
            day_energy=energy,
            data_source=winner.source_id,
            soc_timeline=timeline,
            power_curves=energy.curves or None,
            realtime=realtime,
            realtime_source=realtime_source,
            sources_tried=attempts,
        )

    def _live_only_report(
        self,
        device_id: str,
        day: date,
        sample: RealtimeSample,
        attempts: list[SourceAttempt],
    ) -> MergedDeviceReport:
        # Day energy is never integrated from live samples
        return MergedDeviceReport(
            device_id=device_id,
            query_date=day,
            meta=DeviceMeta(device_id=device_id, device_type=self._config.default_device_type, online=True),
            day_energy=DayEnergySummary.empty(device_id, day, source_id=LIVE_ONLY),
            data_source=LIVE_ONLY,
            realtime=sample,
            realtime_source=LIVE_SOURCE_ID,
            sources_tried=attempts,
        )

    async def _wait_for_live(self, device_id: str, cap: float) -> RealtimeSample | None:
        """Watch the device and wait up to ``cap`` seconds for a sample.

        Any sample stored during the wait is returned as it is, whatever
        timestamp the device put on it. The temporary watch is released on
        every exit, including cancellation by the caller.
        """
        interval = self._config.wait_poll_interval_seconds
        max_age = self._live_config.max_sample_age_seconds
        deadline = time.monotonic() + cap

        handle = SubscriberHandle(label=f"reconcile-wait:{device_id}")
        await self._registry.subscribe(device_id, handle)
        try:
            while True:
                sample = self._cache.get_fresh(device_id, max_age)
                if sample is not None:
                    return sample
                left = deadline - time.monotonic()
                if left <= 0:
                    return None
                sample = await self._cache.wait_for(device_id, min(interval, left))
                if sample is not None:
                    return sample
        finally:
            await self._registry.unsubscribe(device_id, handle)

    # ── Single-capability chains ──────────────────────────────

    async def get_day_energy(self, device_id: str, day: date) -> DayEnergySummary | None:
        validate_device_id(device_id)
        result = await self._first(self._config.day_energy_priority, Capability.DAY_ENERGY,
                                   lambda s: s.fetch_day_energy(device_id, day), device_id)
        return result.value if result else None

    async def get_soc_timeline(self, device_id: str, day: date) -> list[SocTimelinePoint]:
        validate_device_id(device_id)
        result = await self._first(self._config.soc_priority, Capability.SOC_TIMELINE,
                                   lambda s: s.fetch_soc_timeline(device_id, day), device_id)
        return result.value if result else []

    async def get_realtime(self, device_id: str) -> tuple[RealtimeSample, str] | None:
        """Freshest realtime sample and the id of the source that served it."""
        validate_device_id(device_id)
        result = await self._first(self._config.realtime_priority, Capability.REALTIME,
                                   lambda s: s.fetch_realtime(device_id), device_id)
        if result is None:
            return None
        return result.value, result.attempt.source_id

    async def get_energy_summary(self, device_id: str, start: date, end: date) -> EnergyRangeSummary:
        """Per-day energy between ``start`` and ``end`` inclusive."""
        validate_device_id(device_id)
        if end < start:
            raise InvalidInput("End date is before start date")
        span = (end - start).days + 1
        if span > self._config.max_summary_days:
            raise InvalidInput(f"Date range longer than {self._config.max_summary_days} days")

        days = [start + timedelta(days=i) for i in range(span)]
        limiter = asyncio.Semaphore(SUMMARY_CONCURRENCY)

        async def fetch(day: date) -> DayEnergySummary | None:
            async with limiter:
                return await self.get_day_energy(device_id, day)

        results = await asyncio.gather(*(fetch(d) for d in days))
        summary = EnergyRangeSummary(device_id=device_id, start=start, end=end)
        for day, energy in zip(days, results):
            if energy is None:
                summary.missing_days.append(day)
            else:
                summary.add_day(energy)
        return summary

    # ── Helpers ───────────────────────────────────────────────

    def _chain(self, priority: list[str]) -> list[UpstreamSource]:
        return [self._sources[sid] for sid in priority if sid in self._sources]

    async def _first(
        self,
        priority: list[str],
        capability: Capability,
        call: Callable[[UpstreamSource], Awaitable[Any]],
        device_id: str,
    ) -> SourceResult | None:
        budget = self._request_budget()
        for source in self._chain(priority):
            result = await self._call(source, capability, lambda s=source: call(s), budget, device_id)
            if result.ok:
                return result
        return None

    async def _call(
        self,
        source: UpstreamSource,
        capability: Capability,
        call: Callable[[], Awaitable[Any]],
        budget: _Budget,
        device_id: str,
    ) -> SourceResult:
        timeout = budget.cap(self._timeouts.get(source.source_id, DEFAULT_SOURCE_TIMEOUT))
        result = await call_source(source, capability, call, timeout, device_id)
        if self._health is not None:
            self._health.record_attempt(result.attempt)
        return result
