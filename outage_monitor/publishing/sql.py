"""
Relational Publisher

Appends events to two tables:
- Event(event_type, payload, created_at): append-only, opaque payloads
- OutageEvent(id, status, start_time, end_time, device_id): structured records

Works with any SQLAlchemy async URL (mysql+aiomysql://... in the field,
sqlite+aiosqlite:// in tests). Each call is one transaction bounded by
the configured timeout.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    insert,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..common.exceptions import CorruptEventError, PublishError
from ..common.logging_setup import get_service_logger
from ..storage.event_store import OutageEvent
from .base import INCIDENT_EVENT_TYPE, PROBE_EVENT_TYPE, Publisher
from .probes import Probe

logger = get_service_logger("publisher.sql")

metadata = MetaData()

event_table = Table(
    "Event",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(64), nullable=False, index=True),
    Column("payload", LargeBinary, nullable=False),
    Column("created_at", DateTime, nullable=False, index=True),
)

outage_event_table = Table(
    "OutageEvent",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("status", String(16), nullable=False),
    Column("start_time", DateTime, nullable=False),
    Column("end_time", DateTime, nullable=True),
    Column("device_id", String(128), nullable=False, index=True),
)


def _naive_utc(ts: datetime | None) -> datetime | None:
    """DATETIME columns hold naive UTC."""
    if ts is None:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


class SqlPublisher(Publisher):
    def __init__(
        self,
        dsn: str,
        timeout_seconds: float = 10.0,
        engine: AsyncEngine | None = None,
        create_schema: bool = False,
    ):
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.create_schema = create_schema
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.dsn, pool_pre_ping=True)
        return self._engine

    async def connect(self) -> None:
        """
        Verify the database is reachable (and create tables when asked).

        Raises:
            PublishError: database unreachable
        """
        try:
            async with self.engine.begin() as conn:
                await asyncio.wait_for(conn.execute(text("SELECT 1")), self.timeout_seconds)
                if self.create_schema:
                    await conn.run_sync(metadata.create_all)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            raise PublishError(f"cannot connect to database: {e}") from e
        logger.info("Connected to events database")

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    async def _execute(self, statement) -> None:
        async with self.engine.begin() as conn:
            await asyncio.wait_for(conn.execute(statement), self.timeout_seconds)

    async def publish(self, event_type: str, payload: bytes) -> None:
        statement = insert(event_table).values(
            event_type=event_type,
            payload=payload,
            created_at=_naive_utc(datetime.now(timezone.utc)),
        )
        try:
            await self._execute(statement)
        except asyncio.TimeoutError as e:
            raise PublishError("insert timed out", event_type) from e
        except (SQLAlchemyError, OSError) as e:
            raise PublishError(f"failed to publish event: {e}", event_type) from e

    async def publish_outage_event(self, event: OutageEvent) -> None:
        statement = insert(outage_event_table).values(
            id=event.id,
            status=event.status.value,
            start_time=_naive_utc(event.start_time),
            end_time=_naive_utc(event.end_time),
            device_id=event.device_id,
        )
        try:
            await self._execute(statement)
        except IntegrityError:
            # Redelivery after a crash between publish and delete
            logger.info(
                f"Outage event {event.id} already stored",
                extra={"event_id": event.id},
            )
        except asyncio.TimeoutError as e:
            raise PublishError("insert timed out", INCIDENT_EVENT_TYPE) from e
        except (SQLAlchemyError, OSError) as e:
            raise PublishError(f"failed to publish outage event: {e}", INCIDENT_EVENT_TYPE) from e


class SqlProbeHistory:
    """Reads probes back from the Event table for crash-loop detection."""

    def __init__(self, publisher: SqlPublisher):
        self.publisher = publisher

    async def recent_probes(self, device_id: str, lookback: timedelta) -> list[Probe]:
        since = _naive_utc(datetime.now(timezone.utc) - lookback)
        statement = (
            select(event_table.c.payload)
            .where(event_table.c.created_at >= since)
            .where(event_table.c.event_type == PROBE_EVENT_TYPE)
            .order_by(event_table.c.created_at.desc(), event_table.c.id.desc())
        )

        try:
            async with self.publisher.engine.connect() as conn:
                result = await asyncio.wait_for(
                    conn.execute(statement), self.publisher.timeout_seconds
                )
                rows = result.fetchall()
        except asyncio.TimeoutError as e:
            raise PublishError("probe history query timed out", PROBE_EVENT_TYPE) from e
        except (SQLAlchemyError, OSError) as e:
            raise PublishError(f"cannot read probe history: {e}", PROBE_EVENT_TYPE) from e

        probes = []
        for (payload,) in rows:
            try:
                probe = Probe.from_json(payload)
            except CorruptEventError as e:
                logger.debug(f"Skipping unreadable probe row: {e.message}")
                continue
            # Payloads are opaque to the table, so filter by device here
            if probe.device_id == device_id:
                probes.append(probe)
        return probes
