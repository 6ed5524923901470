"""Tests for the power state machine, probes and crash-loop detection."""

import json
import logging
from datetime import timedelta

import pytest

from outage_monitor.common.config import CrashLoopSettings, PowerSettings
from outage_monitor.common.exceptions import PublishError, SensorError
from outage_monitor.publishing.probes import Probe, ProbeStatus
from outage_monitor.services.power_monitor import (
    BATTERY_GAUGE,
    OUTAGE_GAUGE,
    PowerState,
    PowerStateMonitor,
    classify,
)
from outage_monitor.storage.event_store import OutageEvent, OutageStatus

from tests.fakes import T0, FakeProbeHistory, FakePublisher

POWER_LOST_MA = -500.0
POWER_OK_MA = 250.0


@pytest.fixture
def make_monitor(memory_store, publisher, reader, device, metrics, clock, monotonic):
    def _make(power=None, probe_history=None, crash_loop=None, store=None, on_critical_battery=None):
        return PowerStateMonitor(
            store or memory_store,
            publisher,
            reader,
            device,
            power or PowerSettings(),
            metrics=metrics,
            probe_history=probe_history,
            crash_loop=crash_loop,
            on_critical_battery=on_critical_battery,
            clock=clock,
            monotonic=monotonic,
        )
    return _make


class TestClassify:
    def test_below_threshold_is_unavailable(self):
        assert classify(-10.5, PowerState.AVAILABLE, -10.0) == PowerState.UNAVAILABLE
        assert classify(-10.0, PowerState.AVAILABLE, -10.0) == PowerState.AVAILABLE

    def test_zero_threshold_policy(self):
        assert classify(-0.1, PowerState.AVAILABLE, 0.0) == PowerState.UNAVAILABLE

    def test_hysteresis_on_recovery(self):
        assert classify(-5.0, PowerState.UNAVAILABLE, -10.0, 20.0) == PowerState.UNAVAILABLE
        assert classify(10.0, PowerState.UNAVAILABLE, -10.0, 20.0) == PowerState.AVAILABLE


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_outage_opens_and_closes_one_incident(self, make_monitor, memory_store, reader, clock):
        monitor = make_monitor()
        await monitor.start()

        reader.current_ma = POWER_LOST_MA
        for _ in range(3):
            await monitor.tick()
            clock.advance(5)

        assert monitor.state == PowerState.UNAVAILABLE
        assert memory_store.open is not None
        assert memory_store._counter == 1

        clock.advance(300)
        reader.current_ma = POWER_OK_MA
        await monitor.tick()

        assert monitor.state == PowerState.AVAILABLE
        assert memory_store.open is None
        assert len(memory_store.finished) == 1
        event = OutageEvent.from_json(next(iter(memory_store.finished.values())))
        assert event.status == OutageStatus.RESOLVED
        assert event.start_time == T0
        assert event.end_time == T0 + timedelta(seconds=315)

    @pytest.mark.asyncio
    async def test_gauges(self, make_monitor, reader, metrics, device):
        monitor = make_monitor()
        reader.bus_voltage_v = 3.6

        await monitor.tick()
        assert metrics.last(OUTAGE_GAUGE) == 1
        assert metrics.last(BATTERY_GAUGE) == pytest.approx(50.0)

        reader.current_ma = POWER_LOST_MA
        await monitor.tick()
        assert metrics.last(OUTAGE_GAUGE) == 0
        assert all(tags == device.metric_tags() for _, _, tags in metrics.samples)
        assert "monitor-id:dev-1" in metrics.samples[0][2]

    @pytest.mark.asyncio
    async def test_sensor_error_skips_tick(self, make_monitor, reader, metrics, memory_store):
        monitor = make_monitor()
        reader.error = SensorError("i2c bus busy")

        await monitor.tick()

        assert metrics.samples == []
        assert monitor.state == PowerState.AVAILABLE
        assert memory_store.open is None
        assert monitor.get_status()["sensor_errors"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_retried_next_tick(self, make_monitor, reader, memory_store):
        monitor = make_monitor()
        reader.current_ma = POWER_LOST_MA
        memory_store.fail_start = True

        await monitor.tick()
        assert monitor.state == PowerState.AVAILABLE
        assert memory_store.open is None

        memory_store.fail_start = False
        await monitor.tick()
        assert monitor.state == PowerState.UNAVAILABLE
        assert memory_store.open is not None

    @pytest.mark.asyncio
    async def test_finish_failure_retried_next_tick(self, make_monitor, reader, memory_store):
        monitor = make_monitor()
        reader.current_ma = POWER_LOST_MA
        await monitor.tick()

        reader.current_ma = POWER_OK_MA
        memory_store.fail_finish = True
        await monitor.tick()
        assert monitor.state == PowerState.UNAVAILABLE
        assert memory_store.open is not None

        memory_store.fail_finish = False
        await monitor.tick()
        assert monitor.state == PowerState.AVAILABLE
        assert len(memory_store.finished) == 1

    @pytest.mark.asyncio
    async def test_recovers_ongoing_incident(self, make_monitor, memory_store, reader):
        ongoing = memory_store.start_incident()
        monitor = make_monitor()

        await monitor.start()
        assert monitor.open_event == ongoing
        assert monitor.state == PowerState.UNAVAILABLE

        reader.current_ma = POWER_OK_MA
        await monitor.tick()
        assert memory_store.open is None
        assert OutageEvent.from_json(next(iter(memory_store.finished.values()))).id == ongoing.id

    @pytest.mark.asyncio
    async def test_critical_battery_requests_shutdown(self, make_monitor, reader, memory_store):
        requests = []
        monitor = make_monitor(
            power=PowerSettings(critical_battery_pct=20.0), on_critical_battery=lambda: requests.append(1)
        )
        reader.current_ma = POWER_LOST_MA
        reader.bus_voltage_v = 3.1

        await monitor.tick()
        await monitor.tick()

        assert requests == [1]
        assert monitor.battery_critical is True
        assert memory_store.open is not None

    @pytest.mark.asyncio
    async def test_critical_battery_still_resolves_when_power_returns(self, make_monitor, reader, memory_store):
        monitor = make_monitor(power=PowerSettings(critical_battery_pct=20.0))
        reader.current_ma = POWER_LOST_MA
        reader.bus_voltage_v = 3.1
        await monitor.tick()
        opened = memory_store.open

        reader.current_ma = POWER_OK_MA
        for _ in range(3):
            await monitor.tick()

        assert memory_store.open is None
        assert list(memory_store.finished) == [f"{opened.id}.json"]
        assert monitor.state == PowerState.AVAILABLE
        assert monitor.battery_critical is False

    @pytest.mark.asyncio
    async def test_unknown_open_record_set_aside_at_start(self, make_monitor, memory_store, reader):
        memory_store.open = OutageEvent("legacy-1", "dev-1", OutageStatus.UNKNOWN, T0)
        monitor = make_monitor()

        await monitor.start()

        assert monitor.open_event is None
        assert memory_store.open is None
        assert list(memory_store.finished) == ["legacy-1.json"]

        reader.current_ma = POWER_LOST_MA
        await monitor.tick()
        assert memory_store.open is not None
        assert memory_store.open.status == OutageStatus.ONGOING

    @pytest.mark.asyncio
    async def test_unknown_record_does_not_wedge_monitor(self, make_monitor, fs_store, reader):
        record = {
            "id": "legacy-1",
            "device_id": "dev-1",
            "status": "unknown",
            "start_time": "2024-03-01T12:00:00Z",
            "end_time": None,
        }
        (fs_store.events_dir / "dev-1_1709294400.json").write_text(json.dumps(record))
        monitor = make_monitor(store=fs_store)
        await monitor.start()

        for _ in range(5):
            await monitor.tick()
        reader.current_ma = POWER_LOST_MA
        await monitor.tick()
        reader.current_ma = POWER_OK_MA
        await monitor.tick()

        assert list(fs_store.events_dir.glob("*.json")) == []
        statuses = sorted(json.loads(raw)["status"] for _, raw in fs_store.list_finished())
        assert statuses == ["resolved", "unknown"]

    @pytest.mark.asyncio
    async def test_unfinishable_record_set_aside_on_recovery(self, make_monitor, memory_store, reader):
        monitor = make_monitor()
        reader.current_ma = POWER_LOST_MA
        await monitor.tick()
        memory_store.open = OutageEvent(memory_store.open.id, "dev-1", OutageStatus.UNKNOWN, T0)

        reader.current_ma = POWER_OK_MA
        await monitor.tick()

        assert monitor.open_event is None
        assert monitor.state == PowerState.AVAILABLE
        assert memory_store.open is None
        assert len(memory_store.finished) == 1

    @pytest.mark.asyncio
    async def test_steady_state_logs_throttled(self, make_monitor, reader, monotonic, caplog):
        caplog.set_level(logging.INFO, logger="outage_monitor.monitor")
        monitor = make_monitor()

        for _ in range(5):
            await monitor.tick()
            monotonic.advance(5)

        available = [r for r in caplog.records if "Power is available" in r.getMessage()]
        assert len(available) == 1

        reader.current_ma = POWER_LOST_MA
        await monitor.tick()
        lost = [r for r in caplog.records if "Power is not available" in r.getMessage()]
        assert len(lost) == 1

        monotonic.advance(3600)
        await monitor.tick()
        lost = [r for r in caplog.records if "Power is not available" in r.getMessage()]
        assert len(lost) == 2


class TestProbes:
    @pytest.mark.asyncio
    async def test_restarting_probe_on_start(self, make_monitor, publisher):
        monitor = make_monitor()

        assert await monitor.start() is True

        probes = publisher.probes()
        assert [p.status for p in probes] == [ProbeStatus.RESTARTING]
        assert probes[0].device_id == "dev-1"
        assert probes[0].sent_at == T0

    @pytest.mark.asyncio
    async def test_failed_restarting_probe_still_starts_clock(self, make_monitor, publisher, monotonic):
        monitor = make_monitor()
        publisher.fail = True
        await monitor.start()
        publisher.fail = False

        await monitor.tick()
        assert publisher.probes() == []

    @pytest.mark.asyncio
    async def test_healthy_probe_every_interval(self, make_monitor, publisher, monotonic):
        monitor = make_monitor()
        await monitor.start()

        monotonic.advance(4 * 3600 - 1)
        await monitor.tick()
        assert len(publisher.probes()) == 1

        monotonic.advance(1)
        await monitor.tick()
        assert [p.status for p in publisher.probes()] == [ProbeStatus.RESTARTING, ProbeStatus.HEALTHY]

    @pytest.mark.asyncio
    async def test_failed_probe_retried_next_tick(self, make_monitor, publisher, monotonic):
        monitor = make_monitor()
        await monitor.start()
        monotonic.advance(4 * 3600)

        publisher.fail = True
        await monitor.tick()
        publisher.fail = False
        await monitor.tick()

        assert [p.status for p in publisher.probes()] == [ProbeStatus.RESTARTING, ProbeStatus.HEALTHY]

    @pytest.mark.asyncio
    async def test_no_healthy_probe_during_outage(self, make_monitor, publisher, reader, monotonic):
        monitor = make_monitor()
        await monitor.start()
        monotonic.advance(5 * 3600)
        reader.current_ma = POWER_LOST_MA

        await monitor.tick()

        assert len(publisher.probes()) == 1


def _probes(clock, count, newest=ProbeStatus.RESTARTING, spacing_minutes=10):
    probes = [
        Probe("dev-1", ProbeStatus.RESTARTING, clock() - timedelta(minutes=spacing_minutes * i))
        for i in range(count)
    ]
    if probes:
        probes[0] = Probe("dev-1", newest, probes[0].sent_at)
    return probes


class TestCrashLoop:
    @pytest.mark.asyncio
    async def test_detected(self, make_monitor, publisher, clock):
        monitor = make_monitor(probe_history=FakeProbeHistory(_probes(clock, 5)))

        assert await monitor.start() is False

        assert [p.status for p in publisher.probes()] == [ProbeStatus.CRASHING]
        assert monitor.halted is True

    @pytest.mark.asyncio
    async def test_already_reported(self, make_monitor, publisher, clock):
        history = FakeProbeHistory(_probes(clock, 6, newest=ProbeStatus.CRASHING))
        monitor = make_monitor(probe_history=history)

        assert await monitor.start() is False
        assert publisher.probes() == []

    @pytest.mark.asyncio
    async def test_old_probes_ignored(self, make_monitor, clock):
        history = FakeProbeHistory(_probes(clock, 5, spacing_minutes=30))
        monitor = make_monitor(probe_history=history)

        assert await monitor.start() is True

    @pytest.mark.asyncio
    async def test_history_failure_ignored(self, make_monitor):
        history = FakeProbeHistory(error=PublishError("database unreachable"))
        monitor = make_monitor(probe_history=history)

        assert await monitor.start() is True

    @pytest.mark.asyncio
    async def test_disabled(self, make_monitor, clock):
        history = FakeProbeHistory(_probes(clock, 10))
        monitor = make_monitor(probe_history=history, crash_loop=CrashLoopSettings(enabled=False))

        assert await monitor.start() is True

    @pytest.mark.asyncio
    async def test_halted_monitor_ignores_ticks(self, make_monitor, reader, memory_store, metrics, clock):
        monitor = make_monitor(probe_history=FakeProbeHistory(_probes(clock, 5)))
        await monitor.start()

        reader.current_ma = POWER_LOST_MA
        await monitor.tick()

        assert memory_store.open is None
        assert metrics.samples == []


@pytest.mark.asyncio
async def test_probe_uses_given_publisher(memory_store, reader, device):
    publisher = FakePublisher()
    monitor = PowerStateMonitor(memory_store, publisher, reader, device, PowerSettings())

    assert await monitor.publish_probe(ProbeStatus.HEALTHY) is True
    assert publisher.published[0][0] == "power_outage_probe"
