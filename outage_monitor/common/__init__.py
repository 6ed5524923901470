"""
Common Utilities

Shared modules used across all loops:
- config.py - Configuration dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- metrics.py - Gauge sinks
- scheduler.py - Interval scheduler with shared stop event
"""

from .config import (
    MonitorConfig,
    DeviceSettings,
    StorageSettings,
    PowerSettings,
    PublisherSettings,
    PublisherKind,
    SyncSettings,
    WatchdogSettings,
    CrashLoopSettings,
    HealthSettings,
    MetricsSettings,
    load_monitor_config,
    load_config_file,
    apply_env_overrides,
    validate_config,
)
from .exceptions import (
    MonitorError,
    ConfigError,
    EventStoreError,
    NoOpenEventError,
    IncidentAlreadyOpenError,
    InvalidEventStateError,
    CorruptEventError,
    StateFileError,
    PublishError,
    RestartError,
    SensorError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    LogThrottle,
)
from .metrics import MetricsSink, NullMetricsSink, PrometheusMetricsSink
from .scheduler import ScheduledLoop, SchedulerGroup

__all__ = [
    # Config
    "MonitorConfig",
    "DeviceSettings",
    "StorageSettings",
    "PowerSettings",
    "PublisherSettings",
    "PublisherKind",
    "SyncSettings",
    "WatchdogSettings",
    "CrashLoopSettings",
    "HealthSettings",
    "MetricsSettings",
    "load_monitor_config",
    "load_config_file",
    "apply_env_overrides",
    "validate_config",
    # Exceptions
    "MonitorError",
    "ConfigError",
    "EventStoreError",
    "NoOpenEventError",
    "IncidentAlreadyOpenError",
    "InvalidEventStateError",
    "CorruptEventError",
    "StateFileError",
    "PublishError",
    "RestartError",
    "SensorError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "LogThrottle",
    # Metrics
    "MetricsSink",
    "NullMetricsSink",
    "PrometheusMetricsSink",
    # Scheduling
    "ScheduledLoop",
    "SchedulerGroup",
]
