"""
Liveness Probes

A probe is a small status message sent independently of outage events:
    {"device_id": ..., "status": "healthy"|"restarting"|"crashing", "sent_at": RFC3339}
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from ..common.exceptions import CorruptEventError
from ..storage.event_store import format_timestamp, parse_timestamp


class ProbeStatus(str, Enum):
    HEALTHY = "healthy"
    RESTARTING = "restarting"
    CRASHING = "crashing"


@dataclass(frozen=True)
class Probe:
    device_id: str
    status: ProbeStatus
    sent_at: datetime

    def to_json(self) -> bytes:
        return json.dumps({
            "device_id": self.device_id,
            "status": self.status.value,
            "sent_at": format_timestamp(self.sent_at),
        }).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> "Probe":
        if not isinstance(data, dict):
            raise CorruptEventError("probe must be a JSON object")
        try:
            status = ProbeStatus(data.get("status"))
        except ValueError:
            raise CorruptEventError(f"unknown probe status {data.get('status')!r}")
        sent_at = parse_timestamp(data.get("sent_at"))
        if sent_at is None:
            raise CorruptEventError("probe sent_at is required")
        return cls(device_id=str(data.get("device_id", "")), status=status, sent_at=sent_at)

    @classmethod
    def from_json(cls, raw: bytes | str) -> "Probe":
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise CorruptEventError(f"invalid probe JSON: {e}")
        return cls.from_dict(data)


class ProbeHistory(Protocol):
    async def recent_probes(self, device_id: str, lookback: timedelta) -> list[Probe]:
        """
        Probes sent by the device within `lookback`, newest first.

        Raises:
            PublishError: history could not be read
        """
        ...


def count_probes_within(probes: list[Probe], window: timedelta, now: datetime) -> int:
    """Number of probes sent within `window` before `now`."""
    return sum(1 for probe in probes if now - probe.sent_at <= window)
