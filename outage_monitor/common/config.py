"""
Configuration Dataclasses

Type-safe configuration structures for the outage monitor.
Loaded from a YAML file, then overridden from the environment.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml

from .exceptions import ConfigError

DEFAULT_CONFIG_PATHS = [
    Path("config.yaml"),
    Path("/etc/c4v/poweroutage/config.yaml"),
    Path("/etc/outage-monitor/config.yaml"),
]


class PublisherKind(str, Enum):
    """Supported remote sinks"""
    WEBHOOK = "webhook"
    SQL = "sql"


@dataclass
class DeviceSettings:
    """Identity and location of the monitoring unit"""
    id: str = ""
    state: str = ""
    city: str = ""
    municipality: str = ""
    parish: str = ""
    lat: float = 0.0
    long: float = 0.0
    require_location: bool = True
    tick_seconds: float = 5.0

    def metric_tags(self) -> list[str]:
        """Base tags attached to every gauge"""
        return [
            f"state:{self.state}",
            f"city:{self.city}",
            f"municipality:{self.municipality}",
            f"parish:{self.parish}",
            f"monitor-id:{self.id}",
        ]


@dataclass
class StorageSettings:
    """Open and finished event queue locations"""
    events_dir: str = ""
    finished_events_dir: str = ""


@dataclass
class PowerSettings:
    """Power state policy (thresholds differ between UPS boards)"""
    unavailable_threshold_ma: float = -10.0
    hysteresis_ma: float = 0.0
    critical_battery_pct: float | None = None
    log_interval_seconds: float = 3600.0
    probe_interval_seconds: float = 4 * 3600.0
    empty_voltage: float = 3.0
    full_voltage: float = 4.2


@dataclass
class PublisherSettings:
    """Remote sink selection"""
    kind: PublisherKind = PublisherKind.WEBHOOK
    endpoint: str = ""
    dsn: str = ""
    timeout_seconds: float = 10.0


@dataclass
class SyncSettings:
    """Finished-queue upload loop"""
    interval_seconds: float = 60.0
    structured: bool = False


@dataclass
class WatchdogSettings:
    """Periodic supervisor reboot"""
    enabled: bool = False
    check_interval_seconds: float = 3600.0
    reboot_interval_seconds: float = 24 * 3600.0
    state_file: str = ""
    supervisor_address: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


@dataclass
class CrashLoopSettings:
    """Startup crash-loop detection from probe history"""
    enabled: bool = True
    window_seconds: float = 3600.0
    max_restarts: int = 5
    lookback_seconds: float = 2 * 24 * 3600.0


@dataclass
class HealthSettings:
    """Local health endpoint (port 0 disables it)"""
    host: str = "127.0.0.1"
    port: int = 0


@dataclass
class MetricsSettings:
    enabled: bool = True


@dataclass
class MonitorConfig:
    """Complete monitor configuration"""
    monitor: DeviceSettings = field(default_factory=DeviceSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    power: PowerSettings = field(default_factory=PowerSettings)
    publisher: PublisherSettings = field(default_factory=PublisherSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    watchdog: WatchdogSettings = field(default_factory=WatchdogSettings)
    crash_loop: CrashLoopSettings = field(default_factory=CrashLoopSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)


def _section(data: Mapping[str, Any], *names: str) -> dict:
    """Return the first section present under any of the given names."""
    for name in names:
        value = data.get(name)
        if value is not None:
            if not isinstance(value, Mapping):
                raise ConfigError(f"section '{name}' must be a mapping")
            return dict(value)
    return {}


def load_monitor_config(data: Mapping[str, Any] | None) -> MonitorConfig:
    """
    Load MonitorConfig from dictionary (e.g., parsed YAML)

    Raises:
        ConfigError: a section is not a mapping or a value has the wrong type
    """
    try:
        return _build_monitor_config(data or {})
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid configuration value: {e}") from e


def _build_monitor_config(data: Mapping[str, Any]) -> MonitorConfig:
    m = _section(data, "monitor", "monitor-config")
    device = DeviceSettings(
        id=str(m.get("id") or m.get("monitor-id") or ""),
        state=m.get("state", ""),
        city=m.get("city", ""),
        municipality=m.get("municipality", ""),
        parish=m.get("parish", ""),
        lat=float(m.get("lat", 0.0)),
        long=float(m.get("long", 0.0)),
        require_location=bool(m.get("require_location", True)),
        tick_seconds=float(m.get("tick_seconds", 5.0)),
    )

    s = _section(data, "storage")
    storage = StorageSettings(
        events_dir=s.get("events_dir", ""),
        finished_events_dir=s.get("finished_events_dir", ""),
    )

    p = _section(data, "power")
    critical = p.get("critical_battery_pct")
    power = PowerSettings(
        unavailable_threshold_ma=float(p.get("unavailable_threshold_ma", -10.0)),
        hysteresis_ma=float(p.get("hysteresis_ma", 0.0)),
        critical_battery_pct=float(critical) if critical is not None else None,
        log_interval_seconds=float(p.get("log_interval_seconds", 3600.0)),
        probe_interval_seconds=float(p.get("probe_interval_seconds", 4 * 3600.0)),
        empty_voltage=float(p.get("empty_voltage", 3.0)),
        full_voltage=float(p.get("full_voltage", 4.2)),
    )

    pub = _section(data, "publisher")
    try:
        kind = PublisherKind(pub.get("kind", "webhook"))
    except ValueError:
        raise ConfigError(f"unknown publisher kind: {pub.get('kind')!r}")
    publisher = PublisherSettings(
        kind=kind,
        endpoint=pub.get("endpoint", ""),
        dsn=pub.get("dsn", ""),
        timeout_seconds=float(pub.get("timeout_seconds", 10.0)),
    )

    sy = _section(data, "sync")
    sync = SyncSettings(
        interval_seconds=float(sy.get("interval_seconds", 60.0)),
        structured=bool(sy.get("structured", False)),
    )

    w = _section(data, "watchdog", "rebooter")
    watchdog = WatchdogSettings(
        enabled=bool(w.get("enabled", False)),
        check_interval_seconds=float(w.get("check_interval_seconds", 3600.0)),
        reboot_interval_seconds=float(w.get("reboot_interval_seconds", 24 * 3600.0)),
        state_file=w.get("state_file", ""),
        supervisor_address=w.get("supervisor_address", ""),
        api_key=w.get("api_key", ""),
        timeout_seconds=float(w.get("timeout_seconds", 10.0)),
    )

    c = _section(data, "crash_loop")
    crash_loop = CrashLoopSettings(
        enabled=bool(c.get("enabled", True)),
        window_seconds=float(c.get("window_seconds", 3600.0)),
        max_restarts=int(c.get("max_restarts", 5)),
        lookback_seconds=float(c.get("lookback_seconds", 2 * 24 * 3600.0)),
    )

    h = _section(data, "health")
    health = HealthSettings(
        host=h.get("host", "127.0.0.1"),
        port=int(h.get("port", 0)),
    )

    mt = _section(data, "metrics")
    metrics = MetricsSettings(enabled=bool(mt.get("enabled", True)))

    return MonitorConfig(
        monitor=device,
        storage=storage,
        power=power,
        publisher=publisher,
        sync=sync,
        watchdog=watchdog,
        crash_loop=crash_loop,
        health=health,
        metrics=metrics,
    )


def apply_env_overrides(config: MonitorConfig, environ: Mapping[str, str] | None = None) -> MonitorConfig:
    """Credentials and endpoints may come from the environment instead of the file."""
    env = os.environ if environ is None else environ

    if env.get("MYSQL_DSN"):
        config.publisher.dsn = env["MYSQL_DSN"]
    if env.get("BALENA_SUPERVISOR_ADDRESS"):
        config.watchdog.supervisor_address = env["BALENA_SUPERVISOR_ADDRESS"]
    if env.get("BALENA_SUPERVISOR_API_KEY"):
        config.watchdog.api_key = env["BALENA_SUPERVISOR_API_KEY"]

    return config


def _is_http_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def validate_config(config: MonitorConfig) -> list[str]:
    """
    Validate the configuration.

    Returns:
        List of problems found (empty when the configuration is usable)
    """
    errors = []

    device = config.monitor
    if not device.id:
        errors.append("Missing monitor.id")
    if device.require_location:
        for name in ("state", "city", "municipality", "parish"):
            if not getattr(device, name):
                errors.append(f"Missing monitor.{name}")
        if device.lat == 0 or device.long == 0:
            errors.append("Missing monitor.lat / monitor.long")
    if device.tick_seconds <= 0:
        errors.append("monitor.tick_seconds must be positive")

    if not config.storage.events_dir:
        errors.append("Missing storage.events_dir")
    if not config.storage.finished_events_dir:
        errors.append("Missing storage.finished_events_dir")
    if (
        config.storage.events_dir
        and config.storage.events_dir == config.storage.finished_events_dir
    ):
        errors.append("storage.events_dir and storage.finished_events_dir must differ")

    if config.publisher.kind == PublisherKind.WEBHOOK:
        if not config.publisher.endpoint:
            errors.append("Missing publisher.endpoint for webhook publisher")
        elif not _is_http_url(config.publisher.endpoint):
            errors.append("publisher.endpoint must be an http:// or https:// URL")
    if config.publisher.kind == PublisherKind.SQL and not config.publisher.dsn:
        errors.append("Missing publisher.dsn (or MYSQL_DSN) for sql publisher")

    if config.sync.interval_seconds <= 0:
        errors.append("sync.interval_seconds must be positive")

    if config.watchdog.enabled:
        w = config.watchdog
        if not w.state_file:
            errors.append("Missing watchdog.state_file")
        if not w.supervisor_address:
            errors.append("Missing watchdog.supervisor_address (or BALENA_SUPERVISOR_ADDRESS)")
        elif not _is_http_url(w.supervisor_address):
            errors.append("watchdog.supervisor_address must be an http:// or https:// URL")
        if not w.api_key:
            errors.append("Missing watchdog.api_key (or BALENA_SUPERVISOR_API_KEY)")
        if w.check_interval_seconds <= 0 or w.reboot_interval_seconds <= 0:
            errors.append("watchdog intervals must be positive")

    return errors


def find_config_path(candidates: list[Path] | None = None) -> Path:
    """First existing candidate, or the first candidate when none exist."""
    candidates = candidates or DEFAULT_CONFIG_PATHS
    for path in candidates:
        if Path(path).exists():
            return Path(path)
    return Path(candidates[0])


def load_config_file(path: str | Path) -> MonitorConfig:
    """
    Load, override and validate configuration from a YAML file.

    Raises:
        ConfigError: file missing, unparseable or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"configuration file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"error parsing {path}: {e}")

    if not isinstance(data, Mapping):
        raise ConfigError(f"{path} must contain a mapping")

    config = apply_env_overrides(load_monitor_config(data))
    problems = validate_config(config)
    if problems:
        raise ConfigError("; ".join(problems), problems)
    return config
