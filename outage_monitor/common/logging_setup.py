"""
Structured Logging Setup

Consistent logging configuration across all loops.
Uses JSON format for structured logs in production.
"""

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import Callable

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = dict(kwargs.get("extra") or {})
        extra["service"] = self.extra.get("service", "unknown")
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "monitor", "syncer")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"outage_monitor.{service_name}")
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    logger.propagate = True

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Level and format come from OUTAGE_MONITOR_LOG_LEVEL and
    OUTAGE_MONITOR_LOG_FORMAT ("json" or "text").
    """
    log_level = os.environ.get("OUTAGE_MONITOR_LOG_LEVEL", "INFO")
    json_format = os.environ.get("OUTAGE_MONITOR_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def configure_all(log_level: str, json_format: bool) -> None:
    """Re-apply level and format to every outage_monitor logger already created."""
    os.environ["OUTAGE_MONITOR_LOG_LEVEL"] = log_level
    os.environ["OUTAGE_MONITOR_LOG_FORMAT"] = "json" if json_format else "text"

    prefix = "outage_monitor."
    for name in list(logging.root.manager.loggerDict):
        if name.startswith(prefix):
            setup_logging(name[len(prefix):], log_level, json_format)


class LogThrottle:
    """
    Allows one log line per window.

    The first call always passes so a freshly started monitor reports its
    state immediately.
    """

    def __init__(self, interval_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._last: float | None = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last is None or now - self._last >= self.interval_seconds:
            self._last = now
            return True
        return False

    def reset(self) -> None:
        self._last = None
