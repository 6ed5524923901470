"""
Event Syncer

Drains the finished queue through the publisher on every tick.
A record is deleted only after its publish succeeded, so delivery is
at-least-once: a crash between publish and delete resends the record.
"""

from ..common.exceptions import CorruptEventError, EventStoreError, PublishError
from ..common.logging_setup import get_service_logger
from ..publishing.base import INCIDENT_EVENT_TYPE, Publisher
from ..storage.event_store import EventStore, OutageEvent

logger = get_service_logger("syncer")


class EventSyncer:
    """
    Uploads finished outage records.

    With structured=True records go through publish_outage_event (typed
    columns); otherwise the raw file bytes are published as-is.
    """

    def __init__(self, store: EventStore, publisher: Publisher, structured: bool = False):
        self.store = store
        self.publisher = publisher
        self.structured = structured

        self._published_count = 0
        self._failed_count = 0
        self._last_pending = 0

    async def sync_once(self) -> int:
        """
        Publish every finished record, in listed order.

        Returns:
            Number of records published and removed
        """
        records = self.store.list_finished()
        self._last_pending = len(records)
        if not records:
            return 0

        published = 0
        for handle, raw in records:
            try:
                await self._publish(raw)
            except CorruptEventError as e:
                logger.error(
                    f"Cannot decode finished record {handle}: {e.message}",
                    extra={"handle": str(handle)},
                )
                continue
            except PublishError as e:
                self._failed_count += 1
                logger.warning(
                    f"Publish failed, will retry next tick: {e.message}",
                    extra={"handle": str(handle), "event_type": e.event_type},
                )
                continue

            try:
                self.store.delete_finished(handle)
            except EventStoreError as e:
                # Published but still on disk; it will be sent again
                logger.error(
                    f"Published record could not be removed: {e.message}",
                    extra={"handle": str(handle)},
                )
                continue

            published += 1
            self._published_count += 1
            logger.info(f"Published finished record {handle}", extra={"handle": str(handle)})

        self._last_pending -= published
        return published

    async def _publish(self, raw: bytes) -> None:
        if self.structured:
            await self.publisher.publish_outage_event(OutageEvent.from_json(raw))
        else:
            await self.publisher.publish(INCIDENT_EVENT_TYPE, raw)

    def get_stats(self) -> dict:
        return {
            "published_count": self._published_count,
            "failed_count": self._failed_count,
            "pending": self._last_pending,
        }
