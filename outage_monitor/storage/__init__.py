"""
Local durable state: outage event queues and the restart timestamp.
"""

from .event_store import (
    EventStore,
    FileSystemEventStore,
    OutageEvent,
    OutageStatus,
    event_filename,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from .restart_state import RestartTimestampFile

__all__ = [
    "EventStore",
    "FileSystemEventStore",
    "OutageEvent",
    "OutageStatus",
    "event_filename",
    "format_timestamp",
    "parse_timestamp",
    "utc_now",
    "RestartTimestampFile",
]
