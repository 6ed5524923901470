"""
Remote sinks for outage records and probes.

- base.py - Publisher interface and event type tags
- webhook.py - HTTP webhook publisher
- sql.py - Relational publisher and probe history
- probes.py - Liveness probe payloads
"""

from ..common.config import PublisherKind, PublisherSettings
from ..common.exceptions import ConfigError
from .base import INCIDENT_EVENT_TYPE, PROBE_EVENT_TYPE, Publisher
from .probes import Probe, ProbeHistory, ProbeStatus, count_probes_within
from .sql import SqlProbeHistory, SqlPublisher
from .webhook import WebhookPublisher, build_envelope


def build_publisher(settings: PublisherSettings) -> Publisher:
    """Create the publisher selected by configuration."""
    if settings.kind == PublisherKind.WEBHOOK:
        return WebhookPublisher(settings.endpoint, timeout_seconds=settings.timeout_seconds)
    if settings.kind == PublisherKind.SQL:
        return SqlPublisher(settings.dsn, timeout_seconds=settings.timeout_seconds)
    raise ConfigError(f"unknown publisher kind: {settings.kind!r}")


def build_probe_history(publisher: Publisher) -> ProbeHistory | None:
    """Probe history is only readable back from the relational sink."""
    if isinstance(publisher, SqlPublisher):
        return SqlProbeHistory(publisher)
    return None


__all__ = [
    "INCIDENT_EVENT_TYPE",
    "PROBE_EVENT_TYPE",
    "Publisher",
    "Probe",
    "ProbeHistory",
    "ProbeStatus",
    "count_probes_within",
    "SqlProbeHistory",
    "SqlPublisher",
    "WebhookPublisher",
    "build_envelope",
    "build_publisher",
    "build_probe_history",
]
