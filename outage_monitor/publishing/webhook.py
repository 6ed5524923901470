"""
Webhook Publisher

POSTs every event to an HTTP endpoint as
    {"type": <event type>, "version": "1", "payload": <base64 payload>}
Any 2xx response confirms delivery.
"""

import base64

import httpx

from ..common.exceptions import PublishError
from ..common.logging_setup import get_service_logger
from ..storage.event_store import OutageEvent
from .base import INCIDENT_EVENT_TYPE, Publisher

logger = get_service_logger("publisher.webhook")

ENVELOPE_VERSION = "1"


def build_envelope(event_type: str, payload: bytes) -> dict:
    return {
        "type": event_type,
        "version": ENVELOPE_VERSION,
        "payload": base64.b64encode(payload).decode("ascii"),
    }


class WebhookPublisher(Publisher):
    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def publish(self, event_type: str, payload: bytes) -> None:
        client = await self._get_client()

        try:
            response = await client.post(
                self.endpoint,
                json=build_envelope(event_type, payload),
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise PublishError(f"request timed out: {e}", event_type) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise PublishError(f"request failed: {e}", event_type) from e

        if not response.is_success:
            raise PublishError(
                f"HTTP {response.status_code}: {response.text[:200]}", event_type
            )

        logger.debug(f"Published {event_type} ({len(payload)} bytes)")

    async def publish_outage_event(self, event: OutageEvent) -> None:
        await self.publish(INCIDENT_EVENT_TYPE, event.to_json())
