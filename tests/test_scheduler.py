"""Tests for the interval scheduler and its shared stop event."""

import asyncio

import pytest

from outage_monitor.common.scheduler import ScheduledLoop, SchedulerGroup


def test_interval_must_be_positive():
    async def noop():
        pass

    with pytest.raises(ValueError):
        ScheduledLoop(0, noop, "bad")


class TestScheduledLoop:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self):
        calls = []

        async def tick():
            calls.append(1)

        loop = ScheduledLoop(0.05, tick, "fast")
        await loop.start()
        await asyncio.sleep(0.3)
        loop.stop()
        await asyncio.wait_for(loop.wait(), timeout=1.0)

        assert loop.running is False
        assert loop.execution_count >= 2
        assert len(calls) == loop.execution_count

    @pytest.mark.asyncio
    async def test_failing_tick_does_not_end_loop(self):
        calls = []

        async def tick():
            calls.append(1)
            raise RuntimeError("boom")

        loop = ScheduledLoop(0.05, tick, "failing")
        await loop.start()
        await asyncio.sleep(0.3)
        loop.stop()
        await asyncio.wait_for(loop.wait(), timeout=1.0)

        assert len(calls) >= 2
        assert loop.error_count == len(calls)
        assert loop.get_stats()["last_error"] == "boom"

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_tick_finish(self):
        started = asyncio.Event()
        finished = []

        async def slow_tick():
            started.set()
            await asyncio.sleep(0.2)
            finished.append(1)

        loop = ScheduledLoop(0.05, slow_tick, "slow")
        await loop.start()
        await asyncio.wait_for(started.wait(), timeout=1.0)
        loop.stop()
        await asyncio.wait_for(loop.wait(), timeout=1.0)

        assert finished == [1]

    @pytest.mark.asyncio
    async def test_stopped_before_first_tick(self):
        calls = []

        async def tick():
            calls.append(1)

        stop_event = asyncio.Event()
        stop_event.set()
        loop = ScheduledLoop(60, tick, "idle", stop_event)
        await loop.start()
        await asyncio.wait_for(loop.wait(), timeout=1.0)

        assert calls == []


class TestSchedulerGroup:
    @pytest.mark.asyncio
    async def test_one_event_stops_all(self):
        counts = {"a": 0, "b": 0}

        def make(name):
            async def tick():
                counts[name] += 1
            return tick

        group = SchedulerGroup()
        group.add("a", 0.05, make("a"))
        group.add("b", 0.05, make("b"))
        await group.start_all()
        await asyncio.sleep(0.25)

        group.stop_event.set()
        await asyncio.wait_for(group.wait_all(), timeout=1.0)

        assert counts["a"] >= 1 and counts["b"] >= 1
        assert set(group.get_stats()) == {"a", "b"}
        assert group.get("a").running is False

    @pytest.mark.asyncio
    async def test_failure_isolated_to_its_loop(self):
        healthy = []

        async def broken():
            raise RuntimeError("sink down")

        async def working():
            healthy.append(1)

        group = SchedulerGroup()
        group.add("broken", 0.05, broken)
        group.add("working", 0.05, working)
        await group.start_all()
        await asyncio.sleep(0.3)
        group.stop_all()
        await asyncio.wait_for(group.wait_all(), timeout=1.0)

        assert group.get("broken").error_count >= 2
        assert len(healthy) >= 2
