"""Tests for the reconciliation engine's fallback chain and merge rules."""

from __future__ import annotations

import asyncio
import time
from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import FakeSource, make_energy, make_sample
from inverter_gateway.config.schema import LiveConfig, ReconcileConfig
from inverter_gateway.errors import DeviceNotFound, InvalidInput, UpstreamMalformed, UpstreamUnavailable
from inverter_gateway.reconcile.engine import ReconciliationEngine
from inverter_gateway.resilience.health_check import HealthChecker
from inverter_gateway.sources.base import (
    Capability,
    DayEnergySummary,
    DayPowerCurves,
    DeviceMeta,
    SocTimelinePoint,
)

DAY = date(2025, 1, 15)
DEVICE = "P250801055"


def build_engine(sources, cache, registry, reconcile, live=None, **kw) -> ReconciliationEngine:
    return ReconciliationEngine(sources, cache, registry, reconcile, live or LiveConfig(), **kw)


class TestPriorityChain:
    @pytest.mark.asyncio
    async def test_first_sufficient_source_wins_verbatim(self, cache, registry, fast_reconcile) -> None:
        energy = make_energy(DEVICE, "a", pv=12.3)
        a = FakeSource("a", day_energy=energy)
        b = FakeSource("b", day_energy=make_energy(DEVICE, "b", pv=99.9))
        engine = build_engine([a, b], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)

        assert report.day_energy is energy
        assert report.data_source == "a"
        assert b.calls == []

    @pytest.mark.asyncio
    async def test_falls_through_absent_to_second(self, cache, registry, fast_reconcile) -> None:
        a = FakeSource("a", day_energy=None)
        b = FakeSource("b", day_energy=make_energy(DEVICE, "b", pv=12.3))
        c = FakeSource("c", day_energy=make_energy(DEVICE, "c", pv=1.0))
        engine = build_engine([a, b, c], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)

        assert report.day_energy.pv_kwh == 12.3
        assert report.data_source == "b"
        assert c.calls == []
        assert [(t.source_id, t.outcome) for t in report.sources_tried] == [("a", "absent"), ("b", "ok")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [
        UpstreamUnavailable("a", "HTTP 502"),
        UpstreamMalformed("a", "invalid JSON"),
        RuntimeError("adapter bug"),
    ])
    async def test_errors_treated_as_insufficient(self, cache, registry, fast_reconcile, failure) -> None:
        a = FakeSource("a", day_energy=failure)
        b = FakeSource("b", day_energy=make_energy(DEVICE, "b"))
        engine = build_engine([a, b], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)
        assert report.data_source == "b"

    @pytest.mark.asyncio
    async def test_slow_source_times_out_and_chain_continues(self, cache, registry, fast_reconcile) -> None:
        a = FakeSource("a", day_energy=make_energy(DEVICE, "a"), delay=5.0)
        b = FakeSource("b", day_energy=make_energy(DEVICE, "b"))
        engine = build_engine([a, b], cache, registry, fast_reconcile, timeouts={"a": 0.1})

        started = time.monotonic()
        report = await engine.get_device_data(DEVICE, DAY)

        assert time.monotonic() - started < 1.0
        assert report.data_source == "b"
        assert report.sources_tried[0].outcome == "timeout"

    @pytest.mark.asyncio
    async def test_source_without_day_energy_is_skipped(self, cache, registry, fast_reconcile) -> None:
        a = FakeSource("a", capabilities={Capability.REALTIME})
        b = FakeSource("b", day_energy=make_energy(DEVICE, "b"))
        engine = build_engine([a, b], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)
        assert report.sources_tried[0].outcome == "unsupported"
        assert a.calls == []

    @pytest.mark.asyncio
    async def test_unconfigured_priority_ids_ignored(self, cache, registry) -> None:
        reconcile = ReconcileConfig(day_energy_priority=["ghost", "b"])
        b = FakeSource("b", day_energy=make_energy(DEVICE, "b"))
        engine = build_engine([b], cache, registry, reconcile)
        report = await engine.get_device_data(DEVICE, DAY)
        assert report.data_source == "b"


class TestMergePrecedence:
    @pytest.mark.asyncio
    async def test_winner_meta_and_live_overlay(self, cache, registry, fast_reconcile) -> None:
        meta = DeviceMeta(DEVICE, "SUNT-6kW", online=True, remark_name="Roof")
        a = FakeSource("a", day_energy=make_energy(DEVICE, "a"), meta=meta)
        live = make_sample(DEVICE, soc=64.0)
        cache.put(DEVICE, live)
        engine = build_engine([a], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)

        assert report.meta is meta
        assert report.realtime is live
        assert report.realtime_source == "live"
        assert report.data_source == "a"

    @pytest.mark.asyncio
    async def test_day_energy_never_recomputed_from_live(self, cache, registry, fast_reconcile) -> None:
        energy = make_energy(DEVICE, "a", pv=0.0)
        a = FakeSource("a", day_energy=energy)
        cache.put(DEVICE, make_sample(DEVICE, pv_total_w=5000.0))
        engine = build_engine([a], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)
        assert report.day_energy.pv_kwh == 0.0

    @pytest.mark.asyncio
    async def test_stale_live_replaced_by_winner_realtime_whole(self, cache, registry, fast_reconcile) -> None:
        stale = make_sample(DEVICE, soc=10.0, received_at=datetime.now(timezone.utc) - timedelta(hours=1))
        cache.put(DEVICE, stale)
        winner_rt = make_sample(DEVICE, soc=80.0, pv_total_w=None)
        a = FakeSource(
            "a",
            capabilities={Capability.DAY_ENERGY, Capability.REALTIME},
            day_energy=make_energy(DEVICE, "a"),
            realtime=winner_rt,
        )
        engine = build_engine([a], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)

        # Unknown in the winner's sample is not back-filled from the stale cache
        assert report.realtime is winner_rt
        assert report.realtime.pv_total_w is None
        assert report.realtime_source == "a"

    @pytest.mark.asyncio
    async def test_no_realtime_when_nothing_fresh(self, cache, registry, fast_reconcile) -> None:
        a = FakeSource("a", day_energy=make_energy(DEVICE, "a"))
        engine = build_engine([a], cache, registry, fast_reconcile)
        report = await engine.get_device_data(DEVICE, DAY)
        assert report.realtime is None
        assert report.realtime_source is None
        assert report.meta.device_type == "Hybrid Inverter"

    @pytest.mark.asyncio
    async def test_soc_timeline_from_winner_only(self, cache, registry, fast_reconcile) -> None:
        timeline = [SocTimelinePoint("00:00", 50.0), SocTimelinePoint("00:05", 51.0)]
        a = FakeSource(
            "a",
            capabilities={Capability.DAY_ENERGY, Capability.SOC_TIMELINE},
            day_energy=make_energy(DEVICE, "a"),
            soc=timeline,
        )
        b = FakeSource("b", capabilities={Capability.SOC_TIMELINE}, soc=[SocTimelinePoint("00:00", 1.0)])
        engine = build_engine([a, b], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)
        assert report.soc_timeline == timeline
        assert b.calls == []

    @pytest.mark.asyncio
    async def test_power_curves_travel_with_winning_energy(self, cache, registry, fast_reconcile) -> None:
        curves = DayPowerCurves(pv=(0.0, 120.0, 340.0), home_load=(500.0, 480.0, 470.0))
        energy = DayEnergySummary(device_id=DEVICE, date=DAY, pv_kwh=1.2, source_id="b", curves=curves)
        a = FakeSource("a", day_energy=None)
        b = FakeSource("b", day_energy=energy)
        engine = build_engine([a, b], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)

        assert report.data_source == "b"
        assert report.power_curves is curves
        body = report.to_dict()["power_curves"]
        assert body["labels"] == ["00:00", "00:05", "00:10"]
        assert body["pv"] == [0.0, 120.0, 340.0]
        assert body["battery"] == []

    @pytest.mark.asyncio
    async def test_no_power_curves_without_them(self, cache, registry, fast_reconcile) -> None:
        a = FakeSource("a", day_energy=make_energy(DEVICE, "a"))
        engine = build_engine([a], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)
        assert report.power_curves is None
        assert report.to_dict()["power_curves"] is None


class TestLiveOnly:
    @pytest.mark.asyncio
    async def test_cached_live_used_when_no_source(self, cache, registry, fast_reconcile) -> None:
        a = FakeSource("a", day_energy=None)
        live = make_sample(DEVICE, soc=42.0)
        cache.put(DEVICE, live)
        engine = build_engine([a], cache, registry, fast_reconcile)

        report = await engine.get_device_data(DEVICE, DAY)

        assert report.data_source == "live_only"
        assert report.is_live_only
        assert report.realtime is live
        assert report.day_energy.pv_kwh == 0.0
        assert report.day_energy.load_kwh == 0.0
        assert registry.watched_devices() == []

    @pytest.mark.asyncio
    async def test_sample_mid_wait_returns_early(self, cache, registry) -> None:
        reconcile = ReconcileConfig(day_energy_priority=["a"], wait_poll_interval_seconds=1.0, wait_max_attempts=6)
        engine = build_engine([FakeSource("a")], cache, registry, reconcile)

        async def arrive() -> None:
            await asyncio.sleep(0.25)
            cache.put(DEVICE, make_sample(DEVICE, soc=55.0))

        started = time.monotonic()
        task = asyncio.create_task(arrive())
        report = await engine.get_device_data(DEVICE, DAY)
        await task
        elapsed = time.monotonic() - started

        assert report.realtime.battery_soc == 55.0
        assert report.data_source == "live_only"
        assert 0.2 <= elapsed < 1.0

    @pytest.mark.asyncio
    async def test_sample_with_old_device_timestamp_accepted_mid_wait(self, cache, registry, fast_reconcile) -> None:
        engine = build_engine([FakeSource("a")], cache, registry, fast_reconcile)
        old_clock = datetime.now(timezone.utc) - timedelta(minutes=10)

        async def arrive() -> None:
            await asyncio.sleep(0.2)
            cache.put(DEVICE, make_sample(DEVICE, soc=55.0, captured_at=old_clock))

        task = asyncio.create_task(arrive())
        report = await engine.get_device_data(DEVICE, DAY)
        await task

        assert report.is_live_only
        assert report.realtime.battery_soc == 55.0
        assert report.realtime.captured_at == old_clock

    @pytest.mark.asyncio
    async def test_wait_watches_device_then_releases(self, cache, registry) -> None:
        reconcile = ReconcileConfig(day_energy_priority=[], wait_poll_interval_seconds=0.05, wait_max_attempts=4)
        engine = build_engine([], cache, registry, reconcile)
        watched_during = []

        async def observe() -> None:
            await asyncio.sleep(0.05)
            watched_during.append(registry.is_watched(DEVICE))

        task = asyncio.create_task(observe())
        with pytest.raises(DeviceNotFound):
            await engine.get_device_data(DEVICE, DAY)
        await task

        assert watched_during == [True]
        assert registry.is_watched(DEVICE) is False

    @pytest.mark.asyncio
    async def test_wait_does_not_drop_existing_subscribers(self, cache, registry) -> None:
        from inverter_gateway.live.fanout import SubscriberHandle

        client = SubscriberHandle()
        await registry.subscribe(DEVICE, client)
        reconcile = ReconcileConfig(day_energy_priority=[], wait_poll_interval_seconds=0.02, wait_max_attempts=2)
        engine = build_engine([], cache, registry, reconcile)

        with pytest.raises(DeviceNotFound):
            await engine.get_device_data(DEVICE, DAY)
        assert registry.subscribers(DEVICE) == [client]


class TestDeviceNotFound:
    @pytest.mark.asyncio
    async def test_bounded_wait(self, cache, registry, fast_reconcile) -> None:
        a, b = FakeSource("a"), FakeSource("b", day_energy=UpstreamUnavailable("b", "down"))
        engine = build_engine([a, b], cache, registry, fast_reconcile)

        started = time.monotonic()
        with pytest.raises(DeviceNotFound) as exc_info:
            await engine.get_device_data(DEVICE, DAY)
        elapsed = time.monotonic() - started

        # 0.1s x 6 plus scheduling slack
        assert 0.5 <= elapsed < 1.5
        err = exc_info.value
        assert err.live_polling_attempted is True
        assert [(t.source_id, t.outcome) for t in err.sources_tried] == [("a", "absent"), ("b", "unavailable")]

    @pytest.mark.asyncio
    async def test_diagnostics_do_not_leak_urls(self, cache, registry, fast_reconcile) -> None:
        a = FakeSource("a", day_energy=UpstreamUnavailable("a", "timeout on https://secret.example/manage?token=x"))
        engine = build_engine([a], cache, registry, fast_reconcile)
        with pytest.raises(DeviceNotFound) as exc_info:
            await engine.get_device_data(DEVICE, DAY)
        body = str(exc_info.value.to_dict())
        assert "http" not in body
        assert "token" not in body

    @pytest.mark.asyncio
    async def test_cancellation_aborts_wait_and_releases_watch(self, cache, registry) -> None:
        reconcile = ReconcileConfig(day_energy_priority=[], wait_poll_interval_seconds=1.0, wait_max_attempts=6)
        engine = build_engine([], cache, registry, reconcile)

        task = asyncio.create_task(engine.get_device_data(DEVICE, DAY))
        await asyncio.sleep(0.1)
        assert registry.is_watched(DEVICE)
        started = time.monotonic()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert time.monotonic() - started < 0.5
        assert registry.is_watched(DEVICE) is False
        assert registry.lock_count() == 0
        assert cache.pending_waits() == 0

    @pytest.mark.asyncio
    async def test_unknown_devices_leave_no_bookkeeping(self, cache, registry) -> None:
        reconcile = ReconcileConfig(day_energy_priority=["a"], wait_poll_interval_seconds=0.005, wait_max_attempts=1)
        engine = build_engine([FakeSource("a")], cache, registry, reconcile)

        for i in range(100):
            with pytest.raises(DeviceNotFound):
                await engine.get_device_data(f"bogus{i}", DAY)

        assert registry.lock_count() == 0
        assert cache.pending_waits() == 0
        assert registry.watched_devices() == []

    @pytest.mark.asyncio
    async def test_no_polling_reported_when_live_disabled(self, cache, registry, fast_reconcile) -> None:
        engine = build_engine([FakeSource("a")], cache, registry, fast_reconcile, live_enabled=False)

        started = time.monotonic()
        with pytest.raises(DeviceNotFound) as exc_info:
            await engine.get_device_data(DEVICE, DAY)

        assert time.monotonic() - started < 0.3
        assert exc_info.value.live_polling_attempted is False
        assert not registry.is_watched(DEVICE)

    @pytest.mark.asyncio
    async def test_no_polling_reported_when_wait_cap_is_zero(self, cache, registry) -> None:
        reconcile = ReconcileConfig(day_energy_priority=["a"], wait_max_attempts=0)
        engine = build_engine([FakeSource("a")], cache, registry, reconcile)

        with pytest.raises(DeviceNotFound) as exc_info:
            await engine.get_device_data(DEVICE, DAY)

        assert exc_info.value.live_polling_attempted is False
        assert exc_info.value.waited_seconds < 0.1


class TestDeadline:
    @pytest.mark.asyncio
    async def test_hard_ceiling_skips_tail_sources(self, cache, registry) -> None:
        reconcile = ReconcileConfig(day_energy_priority=["a", "b", "c"], wait_poll_interval_seconds=1.0)
        a = FakeSource("a", day_energy=make_energy(DEVICE, "a"), delay=5.0)
        b = FakeSource("b", day_energy=make_energy(DEVICE, "b"), delay=5.0)
        c = FakeSource("c", day_energy=make_energy(DEVICE, "c"))
        engine = build_engine([a, b, c], cache, registry, reconcile)

        started = time.monotonic()
        with pytest.raises(DeviceNotFound) as exc_info:
            await engine.get_device_data(DEVICE, DAY, deadline_s=0.3)
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        outcomes = [t.outcome for t in exc_info.value.sources_tried]
        assert outcomes[0] == "timeout"
        assert outcomes[-1] == "skipped"
        assert c.calls == []

    @pytest.mark.asyncio
    async def test_zero_deadline_is_already_spent(self, cache, registry, fast_reconcile) -> None:
        a = FakeSource("a", day_energy=make_energy(DEVICE, "a"))
        engine = build_engine([a], cache, registry, fast_reconcile)

        with pytest.raises(DeviceNotFound) as exc_info:
            await engine.get_device_data(DEVICE, DAY, deadline_s=0)

        assert [t.outcome for t in exc_info.value.sources_tried] == ["skipped"]
        assert exc_info.value.live_polling_attempted is False
        assert a.calls == []

    @pytest.mark.asyncio
    async def test_configured_zero_deadline_means_no_ceiling(self, cache, registry) -> None:
        reconcile = ReconcileConfig(day_energy_priority=["a"], request_deadline_seconds=0)
        a = FakeSource("a", day_energy=make_energy(DEVICE, "a"), delay=0.05)
        engine = build_engine([a], cache, registry, reconcile)

        report = await engine.get_device_data(DEVICE, DAY)
        assert report.data_source == "a"


class TestInvalidInput:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("device_id", ["", "a/b", "x" * 100])
    async def test_rejected_before_any_source(self, cache, registry, fast_reconcile, device_id) -> None:
        a = FakeSource("a", day_energy=make_energy())
        engine = build_engine([a], cache, registry, fast_reconcile)
        with pytest.raises(InvalidInput):
            await engine.get_device_data(device_id, DAY)
        assert a.calls == []


class TestOtherChains:
    @pytest.mark.asyncio
    async def test_soc_timeline_first_non_empty(self, cache, registry, fast_reconcile) -> None:
        timeline = [SocTimelinePoint("08:00", 70.0)]
        a = FakeSource("a", capabilities={Capability.SOC_TIMELINE}, soc=[])
        b = FakeSource("b", capabilities={Capability.SOC_TIMELINE}, soc=timeline)
        engine = build_engine([a, b], cache, registry, fast_reconcile)
        assert await engine.get_soc_timeline(DEVICE, DAY) == timeline

    @pytest.mark.asyncio
    async def test_soc_timeline_empty_when_none(self, cache, registry, fast_reconcile) -> None:
        engine = build_engine([], cache, registry, fast_reconcile)
        assert await engine.get_soc_timeline(DEVICE, DAY) == []

    @pytest.mark.asyncio
    async def test_realtime_prefers_mirror_then_live(self, cache, registry, fast_reconcile) -> None:
        from inverter_gateway.live.bridge import LiveSource

        b = FakeSource("b", capabilities={Capability.REALTIME}, realtime=None)
        live = make_sample(DEVICE, soc=33.0)
        cache.put(DEVICE, live)
        engine = build_engine([b, LiveSource(cache, 300)], cache, registry, fast_reconcile)

        assert await engine.get_realtime(DEVICE) == (live, "live")

        b.realtime_result = make_sample(DEVICE, soc=90.0)
        sample, source_id = await engine.get_realtime(DEVICE)
        assert source_id == "b"
        assert sample.battery_soc == 90.0

    @pytest.mark.asyncio
    async def test_realtime_none(self, cache, registry, fast_reconcile) -> None:
        engine = build_engine([], cache, registry, fast_reconcile)
        assert await engine.get_realtime(DEVICE) is None

    @pytest.mark.asyncio
    async def test_energy_summary_monthly_totals(self, cache, registry, fast_reconcile) -> None:
        class PerDaySource(FakeSource):
            async def fetch_day_energy(self, device_id, day):
                if day.day == 2:
                    return None
                return make_energy(device_id, "a", pv=1.1, day=day)

        engine = build_engine([PerDaySource("a")], cache, registry, fast_reconcile)
        summary = await engine.get_energy_summary(DEVICE, date(2025, 1, 30), date(2025, 2, 3))

        assert [d.date.day for d in summary.days] == [30, 31, 1, 3]
        assert summary.missing_days == [date(2025, 2, 2)]
        assert summary.months["2025-01"].pv_kwh == 2.2
        assert summary.months["2025-02"].pv_kwh == 2.2
        assert summary.months["2025-02"].days == 2

    @pytest.mark.asyncio
    async def test_energy_summary_limits(self, cache, registry, fast_reconcile) -> None:
        engine = build_engine([], cache, registry, fast_reconcile)
        with pytest.raises(InvalidInput):
            await engine.get_energy_summary(DEVICE, date(2025, 2, 1), date(2025, 1, 1))
        with pytest.raises(InvalidInput):
            await engine.get_energy_summary(DEVICE, date(2025, 1, 1), date(2025, 12, 31))


class TestHealthRecording:
    @pytest.mark.asyncio
    async def test_outcomes_fold_into_health(self, cache, registry, fast_reconcile) -> None:
        health = HealthChecker(max_consecutive_failures=2)
        down = UpstreamUnavailable("a", "down")
        a = FakeSource("a", day_energy=down, meta=down)
        b = FakeSource("b", day_energy=make_energy(DEVICE, "b"))
        engine = build_engine([a, b], cache, registry, fast_reconcile, health=health)

        await engine.get_device_data(DEVICE, DAY)
        await engine.get_device_data(DEVICE, DAY)

        assert health.is_healthy("a") is False
        assert health.is_healthy("b") is True
