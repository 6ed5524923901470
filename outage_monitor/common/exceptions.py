"""
Custom Exception Classes for the Outage Monitor

Hierarchical exception structure for error handling across the loops.
"""


class MonitorError(Exception):
    """Base exception for all outage monitor errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(MonitorError):
    """Configuration-related errors (fatal at startup)"""

    def __init__(self, message: str, problems: list[str] | None = None):
        self.problems = problems or []
        super().__init__(f"Config Error: {message}", recoverable=False)


class EventStoreError(MonitorError):
    """Outage event persistence errors"""

    def __init__(self, message: str, path: str | None = None, recoverable: bool = True):
        self.path = path
        super().__init__(message, recoverable)


class NoOpenEventError(EventStoreError):
    """The open queue holds no outage event"""

    def __init__(self, events_dir: str | None = None):
        super().__init__("no outage events recorded", path=events_dir)


class IncidentAlreadyOpenError(EventStoreError):
    """An incident was started while another one is still open"""

    def __init__(self, path: str | None = None):
        super().__init__(f"an incident is already open: {path}", path=path)


class InvalidEventStateError(EventStoreError):
    """Event is not in the state the operation requires"""

    def __init__(self, message: str, status: str | None = None, path: str | None = None):
        self.status = status
        super().__init__(message, path=path)


class CorruptEventError(EventStoreError):
    """Persisted event record could not be decoded"""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(f"Corrupt event: {message}", path=path)


class StateFileError(MonitorError):
    """Restart timestamp file missing or unreadable"""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(f"State File Error: {message}", recoverable=True)


class PublishError(MonitorError):
    """Remote publish attempt failed"""

    def __init__(self, message: str, event_type: str | None = None):
        self.event_type = event_type
        super().__init__(f"Publish Error: {message}", recoverable=True)


class RestartError(MonitorError):
    """Supervisor restart call failed"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(f"Restart Error: {message}", recoverable=True)


class SensorError(MonitorError):
    """Power sensor read failed"""

    def __init__(self, message: str):
        super().__init__(f"Sensor Error: {message}", recoverable=True)
