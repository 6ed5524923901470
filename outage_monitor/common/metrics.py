"""
Metrics Sinks

The monitor reports gauges through a MetricsSink handed to it at
construction. Tags use the statsd "key:value" form.
"""

import re
import threading
from typing import Protocol

from prometheus_client import CollectorRegistry, Gauge, generate_latest

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_]")


class MetricsSink(Protocol):
    def gauge(self, name: str, value: float, tags: list[str]) -> None:
        ...


class NullMetricsSink:
    """Discards every sample"""

    def gauge(self, name: str, value: float, tags: list[str]) -> None:
        return None


def _sanitize(name: str) -> str:
    cleaned = _INVALID_NAME_CHARS.sub("_", name)
    if cleaned and cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


def split_tags(tags: list[str]) -> dict[str, str]:
    """["state:Miranda", "monitor-id:abc"] -> {"state": "Miranda", "monitor_id": "abc"}"""
    labels = {}
    for tag in tags:
        key, _, value = tag.partition(":")
        labels[_sanitize(key)] = value
    return labels


class PrometheusMetricsSink:
    """
    Gauges kept in a prometheus_client registry.

    Gauges are created on first use with the label set of that first
    sample; later samples for the same name must use the same tag keys.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self._gauges: dict[str, Gauge] = {}
        self._lock = threading.Lock()

    def gauge(self, name: str, value: float, tags: list[str]) -> None:
        labels = split_tags(tags)
        metric_name = _sanitize(name)

        with self._lock:
            gauge = self._gauges.get(metric_name)
            if gauge is None:
                gauge = Gauge(
                    metric_name,
                    f"{name} gauge",
                    labelnames=sorted(labels),
                    registry=self.registry,
                )
                self._gauges[metric_name] = gauge

        if labels:
            gauge.labels(**labels).set(value)
        else:
            gauge.set(value)

    def render(self) -> bytes:
        """Text exposition format"""
        return generate_latest(self.registry)
