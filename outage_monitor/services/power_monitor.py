"""
Power State Monitor

Samples the power sensor every tick and drives the outage state machine:
- power lost and no open incident -> start an incident
- power back and an incident is open -> finish it

Layered on top (telemetry only):
- battery and outage gauges on every tick
- throttled steady-state log lines
- liveness probes: "restarting" at start, "healthy" every probe interval
- crash-loop detection from the probe history at start
"""

import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from ..common.config import CrashLoopSettings, DeviceSettings, PowerSettings
from ..common.exceptions import (
    EventStoreError,
    IncidentAlreadyOpenError,
    InvalidEventStateError,
    NoOpenEventError,
    PublishError,
    SensorError,
)
from ..common.logging_setup import LogThrottle, get_service_logger
from ..common.metrics import MetricsSink, NullMetricsSink
from ..hardware.ups import PowerReader, PowerReading, battery_percentage
from ..publishing.base import PROBE_EVENT_TYPE, Publisher
from ..publishing.probes import Probe, ProbeHistory, ProbeStatus, count_probes_within
from ..storage.event_store import EventStore, OutageEvent, OutageStatus, format_timestamp, utc_now

logger = get_service_logger("monitor")

BATTERY_GAUGE = "powermonitor.batterylevel"
OUTAGE_GAUGE = "powermonitor.outage"


class PowerState(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


def classify(current_ma: float, previous: PowerState, threshold_ma: float, hysteresis_ma: float = 0.0) -> PowerState:
    """
    Power is unavailable while current draw is below the threshold.

    Once unavailable, current must climb hysteresis_ma above the threshold
    before power counts as available again.
    """
    if previous == PowerState.UNAVAILABLE:
        if current_ma >= threshold_ma + hysteresis_ma:
            return PowerState.AVAILABLE
        return PowerState.UNAVAILABLE
    if current_ma < threshold_ma:
        return PowerState.UNAVAILABLE
    return PowerState.AVAILABLE


class PowerStateMonitor:
    """
    Owns the open queue of the event store.

    Nothing here is fatal: sensor failures skip the tick, store failures
    leave the state unchanged so the transition is retried on the next
    tick, and probe failures only delay the next probe.
    """

    def __init__(
        self,
        store: EventStore,
        publisher: Publisher,
        reader: PowerReader,
        device: DeviceSettings,
        power: PowerSettings,
        metrics: MetricsSink | None = None,
        probe_history: ProbeHistory | None = None,
        crash_loop: CrashLoopSettings | None = None,
        on_critical_battery: Callable[[], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.publisher = publisher
        self.reader = reader
        self.device = device
        self.power = power
        self.metrics = metrics or NullMetricsSink()
        self.probe_history = probe_history
        self.crash_loop = crash_loop or CrashLoopSettings()
        self.on_critical_battery = on_critical_battery
        self._clock = clock
        self._monotonic = monotonic

        self._tags = device.metric_tags()
        self._log_throttle = LogThrottle(power.log_interval_seconds, clock=monotonic)

        self._state = PowerState.AVAILABLE
        self._open_event: OutageEvent | None = None
        self._last_probe: float | None = None
        self._last_reading: PowerReading | None = None
        self._battery_pct: float | None = None
        self._halted = False
        self._battery_critical = False
        self._sensor_errors = 0

    @property
    def state(self) -> PowerState:
        return self._state

    @property
    def open_event(self) -> OutageEvent | None:
        return self._open_event

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def battery_critical(self) -> bool:
        return self._battery_critical

    # ============================================
    # STARTUP
    # ============================================

    async def start(self) -> bool:
        """
        Recover the open incident, check for a crash loop, announce the restart.

        Returns:
            False when the monitor must not run (crash loop detected)
        """
        self.recover_open_event()

        if await self.detect_crash_loop():
            self._halted = True
            return False

        await self.publish_probe(ProbeStatus.RESTARTING)
        # A failed restart probe still starts the probe clock
        self._last_probe = self._monotonic()
        return True

    def recover_open_event(self) -> OutageEvent | None:
        try:
            event = self.store.most_recent_event()
        except NoOpenEventError:
            return None

        if event.status != OutageStatus.ONGOING:
            logger.error(
                f"Open record has status {event.status.value}, setting it aside",
                extra={"event_id": event.id},
            )
            self._retire_open_event()
            return None

        logger.info(
            f"Ongoing incident recovered, started at {format_timestamp(event.start_time)}",
            extra={"event_id": event.id, "start_time": format_timestamp(event.start_time)},
        )
        self._open_event = event
        self._state = PowerState.UNAVAILABLE
        return event

    async def detect_crash_loop(self) -> bool:
        if self.probe_history is None or not self.crash_loop.enabled:
            return False

        try:
            probes = await self.probe_history.recent_probes(
                self.device.id, timedelta(seconds=self.crash_loop.lookback_seconds)
            )
        except PublishError as e:
            logger.warning(f"Could not read probe history: {e.message}")
            return False

        restarts = count_probes_within(
            probes, timedelta(seconds=self.crash_loop.window_seconds), self._clock()
        )
        logger.info(f"Found {restarts} recent probes for monitor {self.device.id}")
        if restarts < self.crash_loop.max_restarts:
            return False

        if not probes or probes[0].status != ProbeStatus.CRASHING:
            await self.publish_probe(ProbeStatus.CRASHING)
        logger.error(
            f"Device seems to be in a crash loop: {restarts} restarts within "
            f"{self.crash_loop.window_seconds:.0f}s"
        )
        return True

    # ============================================
    # TICK
    # ============================================

    async def tick(self) -> None:
        if self._halted:
            return

        try:
            reading = self.reader.read()
        except SensorError as e:
            self._sensor_errors += 1
            logger.warning(f"Skipping tick: {e.message}")
            return

        self._last_reading = reading
        pct = battery_percentage(
            reading.bus_voltage_v, self.power.empty_voltage, self.power.full_voltage
        )
        self._battery_pct = pct
        self.metrics.gauge(BATTERY_GAUGE, pct, self._tags)

        new_state = classify(
            reading.current_ma,
            self._state,
            self.power.unavailable_threshold_ma,
            self.power.hysteresis_ma,
        )

        if new_state == PowerState.UNAVAILABLE:
            self.metrics.gauge(OUTAGE_GAUGE, 0, self._tags)
            self._log_state(new_state, reading, pct)
            if self._open_event is None and not self._start_incident():
                return
            self._state = new_state
            self._check_critical_battery(pct)
            return

        self.metrics.gauge(OUTAGE_GAUGE, 1, self._tags)
        self._log_state(new_state, reading, pct)
        if self._open_event is not None and not self._finish_incident():
            return
        self._state = new_state
        self._battery_critical = False

        if self._probe_due():
            if await self.publish_probe(ProbeStatus.HEALTHY):
                self._last_probe = self._monotonic()

    def _log_state(self, new_state: PowerState, reading: PowerReading, pct: float) -> None:
        if new_state != self._state:
            self._log_throttle.reset()
        if not self._log_throttle.ready():
            return
        if new_state == PowerState.UNAVAILABLE:
            logger.info(
                f"Power is not available. Remaining battery: {pct:.1f}%, "
                f"current: {reading.current_ma:.1f}mA"
            )
        else:
            logger.info(f"Power is available. Remaining battery: {pct:.1f}%")

    def _start_incident(self) -> bool:
        """Returns False when the transition must be retried next tick."""
        logger.info("Power lost with no ongoing incident, starting one")
        try:
            self._open_event = self.store.start_incident(self.device.id)
        except IncidentAlreadyOpenError:
            logger.warning("Incident was already open, continuing it")
            return self.recover_open_event() is not None
        except EventStoreError as e:
            logger.error(f"Could not start incident: {e.message}")
            return False
        return True

    def _finish_incident(self) -> bool:
        """Returns False when the transition must be retried next tick."""
        logger.info("Power outage ended, recording incident")
        try:
            self.store.finish_incident()
        except NoOpenEventError:
            logger.warning("No open incident left to finish")
        except InvalidEventStateError as e:
            logger.error(f"Could not finish incident: {e.message}")
            if not self._retire_open_event():
                return False
        except EventStoreError as e:
            logger.error(f"Could not finish incident: {e.message}")
            return False
        self._open_event = None
        return True

    def _retire_open_event(self) -> bool:
        """Move a record that cannot be finished out of the open queue."""
        try:
            self.store.retire_open_event()
        except NoOpenEventError:
            logger.warning("Open record already gone")
        except EventStoreError as e:
            logger.error(f"Could not set aside open record: {e.message}")
            return False
        self._open_event = None
        return True

    def _check_critical_battery(self, pct: float) -> None:
        """
        Request a shutdown once the battery drops below the critical level.

        Ticks keep running until the shutdown lands, so the open incident is
        still resolved if power returns first. Without a shutdown hook the
        monitor just keeps going.
        """
        critical = self.power.critical_battery_pct
        if critical is None or pct >= critical or self._battery_critical:
            return
        self._battery_critical = True
        logger.error(
            f"Battery at {pct:.1f}% is below {critical:.1f}%, stopping monitor",
            extra={"battery_pct": pct},
        )
        if self.on_critical_battery is not None:
            self.on_critical_battery()

    # ============================================
    # PROBES
    # ============================================

    def _probe_due(self) -> bool:
        if self._last_probe is None:
            return True
        return self._monotonic() - self._last_probe >= self.power.probe_interval_seconds

    async def publish_probe(self, status: ProbeStatus) -> bool:
        probe = Probe(device_id=self.device.id, status=status, sent_at=self._clock())
        try:
            await self.publisher.publish(PROBE_EVENT_TYPE, probe.to_json())
        except PublishError as e:
            logger.warning(
                f"Could not publish {status.value} probe: {e.message}",
                extra={"event_type": PROBE_EVENT_TYPE},
            )
            return False
        logger.debug(f"Published {status.value} probe")
        return True

    def get_status(self) -> dict:
        event = self._open_event
        return {
            "power_state": self._state.value,
            "battery_pct": self._battery_pct,
            "current_ma": self._last_reading.current_ma if self._last_reading else None,
            "halted": self._halted,
            "battery_critical": self._battery_critical,
            "sensor_errors": self._sensor_errors,
            "open_incident": (
                {"id": event.id, "start_time": format_timestamp(event.start_time)}
                if event is not None else None
            ),
        }
