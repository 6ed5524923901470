"""
Publisher Interface

A publisher makes one delivery attempt per call and raises PublishError
when the remote sink did not confirm it. Retrying is the caller's job.
"""

from abc import ABC, abstractmethod

from ..storage.event_store import OutageEvent

INCIDENT_EVENT_TYPE = "power_outage_incident"
PROBE_EVENT_TYPE = "power_outage_probe"


class Publisher(ABC):
    """Remote sink for opaque events and structured outage records"""

    @abstractmethod
    async def publish(self, event_type: str, payload: bytes) -> None:
        """
        Deliver an opaque payload tagged with its event type.

        Raises:
            PublishError: delivery was not confirmed
        """

    @abstractmethod
    async def publish_outage_event(self, event: OutageEvent) -> None:
        """
        Deliver a structured outage record.

        Raises:
            PublishError: delivery was not confirmed
        """

    async def connect(self) -> None:
        """Establish any connection the sink needs before the loops start."""

    async def close(self) -> None:
        """Release connections."""
