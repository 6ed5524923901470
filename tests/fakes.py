"""In-memory collaborators for loop tests."""

from datetime import datetime, timedelta, timezone
from typing import Callable

from outage_monitor.common.exceptions import (
    EventStoreError,
    IncidentAlreadyOpenError,
    NoOpenEventError,
    PublishError,
    SensorError,
)
from outage_monitor.hardware.ups import PowerReading
from outage_monitor.publishing.base import Publisher
from outage_monitor.publishing.probes import Probe
from outage_monitor.storage.event_store import EventStore, OutageEvent, OutageStatus

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryEventStore(EventStore):
    def __init__(self, device_id: str = "dev-1", clock: Callable[[], datetime] | None = None):
        self.device_id = device_id
        self._clock = clock or FakeClock()
        self.open: OutageEvent | None = None
        self.finished: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_start = False
        self.fail_finish = False
        self.fail_delete = False
        self._counter = 0

    def start_incident(self, device_id: str | None = None) -> OutageEvent:
        if self.open is not None:
            raise IncidentAlreadyOpenError("memory")
        if self.fail_start:
            raise EventStoreError("disk full")
        self._counter += 1
        self.open = OutageEvent(
            id=f"evt-{self._counter}",
            device_id=device_id or self.device_id,
            status=OutageStatus.ONGOING,
            start_time=self._clock(),
        )
        return self.open

    def finish_incident(self) -> OutageEvent:
        if self.open is None:
            raise NoOpenEventError()
        if self.fail_finish:
            raise EventStoreError("disk full")
        resolved = self.open.resolve(self._clock())
        self.finished[f"{resolved.id}.json"] = resolved.to_json()
        self.open = None
        return resolved

    def most_recent_event(self) -> OutageEvent:
        if self.open is None:
            raise NoOpenEventError()
        return self.open

    def retire_open_event(self) -> OutageEvent:
        if self.open is None:
            raise NoOpenEventError()
        event = self.open
        self.finished[f"{event.id}.json"] = event.to_json()
        self.open = None
        return event

    def list_finished(self) -> list[tuple[str, bytes]]:
        return list(self.finished.items())

    def delete_finished(self, handle: str) -> None:
        if self.fail_delete:
            raise EventStoreError("read-only filesystem")
        self.finished.pop(handle, None)
        self.deleted.append(handle)

    def pending_count(self) -> int:
        return len(self.finished)


class FakePublisher(Publisher):
    def __init__(self, fail: bool = False, fail_when: Callable[[str, bytes], bool] | None = None):
        self.fail = fail
        self.fail_when = fail_when
        self.published: list[tuple[str, bytes]] = []
        self.outage_events: list[OutageEvent] = []
        self.attempts = 0
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.closed = True

    async def publish(self, event_type: str, payload: bytes) -> None:
        self.attempts += 1
        if self.fail or (self.fail_when is not None and self.fail_when(event_type, payload)):
            raise PublishError("sink unavailable", event_type)
        self.published.append((event_type, payload))

    async def publish_outage_event(self, event: OutageEvent) -> None:
        self.attempts += 1
        if self.fail:
            raise PublishError("sink unavailable")
        self.outage_events.append(event)

    def probes(self) -> list[Probe]:
        return [Probe.from_json(p) for t, p in self.published if t == "power_outage_probe"]


class FakeReader:
    def __init__(self, current_ma: float = 250.0, bus_voltage_v: float = 4.2):
        self.current_ma = current_ma
        self.bus_voltage_v = bus_voltage_v
        self.error: SensorError | None = None
        self.closed = False

    def read(self) -> PowerReading:
        if self.error is not None:
            raise self.error
        return PowerReading(self.current_ma, self.bus_voltage_v)

    def close(self) -> None:
        self.closed = True


class RecordingMetrics:
    def __init__(self):
        self.samples: list[tuple[str, float, list[str]]] = []

    def gauge(self, name: str, value: float, tags: list[str]) -> None:
        self.samples.append((name, value, list(tags)))

    def last(self, name: str) -> float | None:
        for sample_name, value, _ in reversed(self.samples):
            if sample_name == name:
                return value
        return None


class FakeProbeHistory:
    def __init__(self, probes: list[Probe] | None = None, error: Exception | None = None):
        self.probes = probes or []
        self.error = error

    async def recent_probes(self, device_id: str, lookback: timedelta) -> list[Probe]:
        if self.error is not None:
            raise self.error
        return [p for p in self.probes if p.device_id == device_id]
