import pytest

from outage_monitor.common.config import DeviceSettings, PowerSettings
from outage_monitor.storage.event_store import FileSystemEventStore

from tests.fakes import FakeClock, FakeMonotonic, FakePublisher, FakeReader, InMemoryEventStore, RecordingMetrics


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def fs_store(tmp_path, clock):
    """Event store over two temporary directories."""
    return FileSystemEventStore(
        "dev-1",
        tmp_path / "events",
        tmp_path / "finished",
        clock=clock,
    )


@pytest.fixture
def memory_store(clock):
    return InMemoryEventStore("dev-1", clock=clock)


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def reader():
    return FakeReader()


@pytest.fixture
def metrics():
    return RecordingMetrics()


@pytest.fixture
def device():
    return DeviceSettings(
        id="dev-1",
        state="Miranda",
        city="Caracas",
        municipality="Sucre",
        parish="Petare",
        lat=10.48,
        long=-66.90,
    )


@pytest.fixture
def power_settings():
    return PowerSettings()
