"""
Outage Monitor Daemon

Owns every long-running piece of the monitor:
- power monitor loop (tick_seconds)
- event syncer loop (sync.interval_seconds)
- restart guard loop (watchdog.check_interval_seconds, when enabled)
- optional local health endpoint

All loops share one stop event. SIGINT/SIGTERM set it; each loop finishes
its current tick and exits, then connections are closed.
"""

import asyncio
import signal
from datetime import datetime, timedelta, timezone

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST

from .. import __version__
from ..common.config import MonitorConfig
from ..common.logging_setup import get_service_logger
from ..common.metrics import MetricsSink, NullMetricsSink, PrometheusMetricsSink
from ..common.scheduler import SchedulerGroup
from ..hardware.ups import Ina219Reader, PowerReader
from ..publishing import Publisher, build_probe_history, build_publisher
from ..publishing.probes import ProbeHistory
from ..storage.event_store import FileSystemEventStore
from ..storage.restart_state import RestartTimestampFile
from .event_syncer import EventSyncer
from .power_monitor import PowerStateMonitor
from .restart_guard import RestartGuard

logger = get_service_logger("daemon")

MONITOR_LOOP = "monitor"
SYNC_LOOP = "sync"
WATCHDOG_LOOP = "watchdog"


class Daemon:
    """
    Outage monitor process.

    Construction builds the store (storage errors are fatal here);
    start() connects the publisher and bootstraps the restart guard
    before any loop runs.
    """

    def __init__(
        self,
        config: MonitorConfig,
        reader: PowerReader | None = None,
        publisher: Publisher | None = None,
        metrics: MetricsSink | None = None,
        probe_history: ProbeHistory | None = None,
        stop_event: asyncio.Event | None = None,
    ):
        self.config = config
        self.stop_event = stop_event or asyncio.Event()
        self.loops = SchedulerGroup(self.stop_event)

        if metrics is None:
            metrics = PrometheusMetricsSink() if config.metrics.enabled else NullMetricsSink()
        self.metrics = metrics

        self.store = FileSystemEventStore(
            config.monitor.id,
            config.storage.events_dir,
            config.storage.finished_events_dir,
        )
        self.publisher = publisher or build_publisher(config.publisher)
        if probe_history is None:
            probe_history = build_probe_history(self.publisher)
        self.probe_history = probe_history

        self._reader = reader
        self.syncer = EventSyncer(self.store, self.publisher, structured=config.sync.structured)
        self.monitor: PowerStateMonitor | None = None
        self.guard: RestartGuard | None = None
        if config.watchdog.enabled:
            self.guard = RestartGuard(
                RestartTimestampFile(config.watchdog.state_file),
                config.watchdog.supervisor_address,
                config.watchdog.api_key,
                timedelta(seconds=config.watchdog.reboot_interval_seconds),
                timeout_seconds=config.watchdog.timeout_seconds,
            )

        self._health_runner: web.AppRunner | None = None
        self._start_time = datetime.now(timezone.utc)
        self._monitor_running = False

    async def start(self) -> None:
        """
        Connect, bootstrap and start every loop.

        Raises:
            PublishError: mandatory publisher connection failed
            StateFileError: restart timestamp cannot be initialized
            SensorError: power sensor cannot be opened
        """
        device = self.config.monitor
        logger.info(
            f"Starting outage monitor for {device.state}, {device.city}, "
            f"{device.municipality}, {device.parish} (monitor ID: {device.id})",
            extra={"device_id": device.id},
        )

        await self.publisher.connect()

        if self.guard is not None:
            self.guard.bootstrap()
            logger.info(
                f"Restart guard enabled (check: {self.config.watchdog.check_interval_seconds}s, "
                f"reboot: {self.config.watchdog.reboot_interval_seconds}s)"
            )
            self.loops.add(
                WATCHDOG_LOOP, self.config.watchdog.check_interval_seconds, self.guard.check_once
            )

        self.loops.add(SYNC_LOOP, self.config.sync.interval_seconds, self._sync_tick)

        if self._reader is None:
            self._reader = Ina219Reader()
        self.monitor = PowerStateMonitor(
            self.store,
            self.publisher,
            self._reader,
            self.config.monitor,
            self.config.power,
            metrics=self.metrics,
            probe_history=self.probe_history,
            crash_loop=self.config.crash_loop,
            on_critical_battery=self._handle_critical_battery,
        )
        self._monitor_running = await self.monitor.start()
        if self._monitor_running:
            self.loops.add(MONITOR_LOOP, self.config.monitor.tick_seconds, self.monitor.tick)
        else:
            logger.error("Power monitor not started, other loops keep running")

        await self.loops.start_all()

        if self.config.health.port:
            await self._start_health_server()

        self._setup_signal_handlers()
        logger.info("Outage monitor started")

    async def _sync_tick(self) -> None:
        await self.syncer.sync_once()

    async def run(self) -> None:
        """Start, wait for the stop event, then shut down cleanly."""
        try:
            await self.start()
            await self.stop_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        logger.info("Stopping outage monitor")
        self.loops.stop_all()
        await self.loops.wait_all()

        await self._stop_health_server()
        if self.guard is not None:
            await self.guard.close()
        await self.publisher.close()

        close = getattr(self._reader, "close", None)
        if close is not None:
            close()

        logger.info("Outage monitor stopped")

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(self._handle_shutdown))

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self.stop_event.set()

    def _handle_critical_battery(self) -> None:
        logger.warning("Battery critical, shutting down")
        self.stop_event.set()

    # ============================================
    # HEALTH ENDPOINT
    # ============================================

    def build_health_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        self._health_runner = web.AppRunner(self.build_health_app())
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, self.config.health.host, self.config.health.port)
        await site.start()

        logger.info(f"Health server started on port {self.config.health.port}")

    async def _stop_health_server(self) -> None:
        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None

    def get_health(self) -> dict:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        monitor_status = self.monitor.get_status() if self.monitor is not None else {}
        healthy = (
            self._monitor_running
            and not monitor_status.get("halted", False)
            and not monitor_status.get("battery_critical", False)
        )

        return {
            "status": "healthy" if healthy else "degraded",
            "version": __version__,
            "device_id": self.config.monitor.id,
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "power_state": monitor_status.get("power_state"),
            "battery_pct": monitor_status.get("battery_pct"),
            "open_incident": monitor_status.get("open_incident"),
            "finished_pending": self.store.pending_count(),
            "syncer": self.syncer.get_stats(),
            "watchdog": self.guard.get_stats() if self.guard is not None else None,
            "loops": self.loops.get_stats(),
        }

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.get_health())

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        if not isinstance(self.metrics, PrometheusMetricsSink):
            return web.Response(status=404, text="metrics disabled")
        return web.Response(
            body=self.metrics.render(),
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )
