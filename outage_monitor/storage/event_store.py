"""
Outage Event Store

Durable, crash-consistent persistence of outage incidents on local storage.

Two directories act as queues:
- events_dir ("open" queue): at most one Ongoing incident
- finished_events_dir ("finished" queue): Resolved incidents waiting for upload

One JSON file per incident, named {device_id}_{start_unix}.json. Moving an
incident from open to finished is a single rename, so a crash leaves the
record in exactly one of the two queues. Both directories must live on
the same filesystem.

Writers:
- the power monitor is the only writer of the open queue
- the event syncer is the only deleter in the finished queue
"""

import dataclasses
import json
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..common.exceptions import (
    CorruptEventError,
    EventStoreError,
    IncidentAlreadyOpenError,
    InvalidEventStateError,
    NoOpenEventError,
)
from ..common.logging_setup import get_service_logger
from .atomic import move_atomic, write_atomic

logger = get_service_logger("store")

# Older writers serialized an unset end time as Go's zero time
_ZERO_TIMES = {"0001-01-01T00:00:00Z", "0001-01-01T00:00:00+00:00"}
_FRACTION = re.compile(r"(\.\d{6})\d+")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OutageStatus(str, Enum):
    """Incident status, serialized by name so files stay readable across versions"""
    UNKNOWN = "unknown"
    ONGOING = "ongoing"
    RESOLVED = "resolved"

    @classmethod
    def parse(cls, value: Any) -> "OutageStatus":
        try:
            return cls(value)
        except ValueError:
            raise CorruptEventError(f"unknown status {value!r}")


def format_timestamp(ts: datetime | None) -> str | None:
    """RFC3339 in UTC"""
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC3339 timestamp; null, "" and the zero time mean unset."""
    if value is None or value == "" or value in _ZERO_TIMES:
        return None
    if not isinstance(value, str):
        raise CorruptEventError(f"timestamp must be a string, got {type(value).__name__}")

    cleaned = _FRACTION.sub(r"\1", value.replace("Z", "+00:00"))
    try:
        ts = datetime.fromisoformat(cleaned)
    except ValueError:
        raise CorruptEventError(f"invalid timestamp {value!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class OutageEvent:
    """
    The record of one outage incident.

    end_time stays None while the incident is Ongoing.
    """
    id: str
    device_id: str
    status: OutageStatus
    start_time: datetime
    end_time: datetime | None = None

    @property
    def filename(self) -> str:
        return event_filename(self.device_id, self.start_time)

    def resolve(self, end_time: datetime) -> "OutageEvent":
        """Ongoing -> Resolved. Any other starting state is an error."""
        if self.status != OutageStatus.ONGOING:
            raise InvalidEventStateError(
                f"cannot finish incident with status {self.status.value}",
                status=self.status.value,
            )
        return dataclasses.replace(self, status=OutageStatus.RESOLVED, end_time=end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "status": self.status.value,
            "start_time": format_timestamp(self.start_time),
            "end_time": format_timestamp(self.end_time),
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> "OutageEvent":
        if not isinstance(data, dict):
            raise CorruptEventError("event record must be a JSON object")

        missing = [k for k in ("id", "device_id", "status", "start_time") if k not in data]
        if missing:
            raise CorruptEventError(f"missing fields: {', '.join(missing)}")

        start_time = parse_timestamp(data["start_time"])
        if start_time is None:
            raise CorruptEventError("start_time is required")

        return cls(
            id=str(data["id"]),
            device_id=str(data["device_id"]),
            status=OutageStatus.parse(data["status"]),
            start_time=start_time,
            end_time=parse_timestamp(data.get("end_time")),
        )

    @classmethod
    def from_json(cls, raw: bytes | str) -> "OutageEvent":
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise CorruptEventError(f"invalid JSON: {e}")
        return cls.from_dict(data)


def event_filename(device_id: str, start_time: datetime) -> str:
    return f"{device_id}_{int(start_time.timestamp())}.json"


def _start_key(path: Path) -> tuple[int, str]:
    """
    Sort key: start time encoded in the filename, then the stem.

    Handles both `{device}_{unix}.json` and the collision form
    `{device}_{unix}-{hex}.json`.
    """
    _, _, suffix = path.stem.rpartition("_")
    try:
        return int(suffix.partition("-")[0]), path.stem
    except ValueError:
        return 0, path.stem


class EventStore(ABC):
    """Open/finished incident queues used by the monitor and the syncer"""

    @abstractmethod
    def start_incident(self, device_id: str | None = None) -> OutageEvent:
        """Open a new Ongoing incident. Fails if one is already open."""

    @abstractmethod
    def finish_incident(self) -> OutageEvent:
        """Resolve the open incident and move it to the finished queue."""

    @abstractmethod
    def most_recent_event(self) -> OutageEvent:
        """The open incident, or NoOpenEventError."""

    @abstractmethod
    def retire_open_event(self) -> OutageEvent:
        """Move the open record to the finished queue without resolving it."""

    @abstractmethod
    def list_finished(self) -> list[tuple[Any, bytes]]:
        """(handle, raw record) for every finished incident, oldest first."""

    @abstractmethod
    def delete_finished(self, handle: Any) -> None:
        """Remove a finished incident. Only call after a confirmed publish."""

    def has_open_event(self) -> bool:
        try:
            self.most_recent_event()
        except NoOpenEventError:
            return False
        return True


class FileSystemEventStore(EventStore):
    """
    EventStore backed by two directories.

    Assumes single-writer discipline (see module docstring); there is no
    cross-process locking.
    """

    def __init__(
        self,
        device_id: str,
        events_dir: str | Path,
        finished_events_dir: str | Path,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.device_id = device_id
        self.events_dir = Path(events_dir).absolute()
        self.finished_dir = Path(finished_events_dir).absolute()
        self._clock = clock

        for directory in (self.events_dir, self.finished_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise EventStoreError(
                    f"cannot create events directory {directory}: {e}",
                    path=str(directory),
                    recoverable=False,
                ) from e

        self._recover_interrupted_finish()
        logger.info(
            f"Event store ready (open: {self.events_dir}, finished: {self.finished_dir})"
        )

    # ============================================
    # OPEN QUEUE
    # ============================================

    def _open_files(self) -> list[Path]:
        return sorted(
            (
                p for p in self.events_dir.iterdir()
                if p.is_file() and p.suffix == ".json" and not p.name.startswith(".")
            ),
            key=_start_key,
        )

    def _read_event(self, path: Path) -> OutageEvent:
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise EventStoreError(f"error reading event file {path}: {e}", path=str(path)) from e
        return OutageEvent.from_json(raw)

    def _load_most_recent(self) -> tuple[Path, OutageEvent]:
        """
        Newest readable open record.

        Unreadable records are deleted: one lost record is preferred over a
        monitor that can never open or close an incident again.
        """
        files = self._open_files()
        if len(files) > 1:
            logger.warning(
                f"{len(files)} open event records found, using the most recent",
                extra={"files": [p.name for p in files]},
            )

        for path in reversed(files):
            try:
                return path, self._read_event(path)
            except CorruptEventError as e:
                logger.error(
                    f"Deleting unreadable event record {path.name}: {e.message}",
                    extra={"path": str(path)},
                )
                path.unlink(missing_ok=True)

        raise NoOpenEventError(str(self.events_dir))

    def start_incident(self, device_id: str | None = None) -> OutageEvent:
        existing = self._open_files()
        if existing:
            raise IncidentAlreadyOpenError(str(existing[-1]))

        event = OutageEvent(
            id=str(uuid.uuid4()),
            device_id=device_id or self.device_id,
            status=OutageStatus.ONGOING,
            start_time=self._clock(),
        )
        path = self.events_dir / event.filename
        try:
            write_atomic(path, event.to_json())
        except OSError as e:
            raise EventStoreError(f"error writing event file {path}: {e}", path=str(path)) from e

        logger.info(
            f"Incident started at {format_timestamp(event.start_time)}",
            extra={"event_id": event.id, "start_time": format_timestamp(event.start_time)},
        )
        return event

    def finish_incident(self) -> OutageEvent:
        path, event = self._load_most_recent()
        resolved = event.resolve(self._clock())

        try:
            write_atomic(path, resolved.to_json())
        except OSError as e:
            raise EventStoreError(f"error writing event file {path}: {e}", path=str(path)) from e

        self._move_to_finished(path)
        logger.info(
            f"Incident resolved after {resolved.end_time - resolved.start_time}",
            extra={
                "event_id": resolved.id,
                "start_time": format_timestamp(resolved.start_time),
                "end_time": format_timestamp(resolved.end_time),
            },
        )
        return resolved

    def most_recent_event(self) -> OutageEvent:
        _, event = self._load_most_recent()
        return event

    def retire_open_event(self) -> OutageEvent:
        path, event = self._load_most_recent()
        target = self._move_to_finished(path)
        logger.warning(
            f"Moved {event.status.value} record {path.name} to the finished queue as-is",
            extra={"event_id": event.id, "path": str(target)},
        )
        return event

    def _move_to_finished(self, path: Path) -> Path:
        target = self.finished_dir / path.name
        if target.exists():
            # Same device and start second as a record still awaiting upload
            target = self.finished_dir / f"{path.stem}-{uuid.uuid4().hex[:8]}.json"
        try:
            move_atomic(path, target)
        except OSError as e:
            raise EventStoreError(
                f"error moving {path.name} to finished queue: {e}", path=str(path)
            ) from e
        return target

    def _recover_interrupted_finish(self) -> None:
        """
        Complete a finish that crashed between the rewrite and the rename.

        Such a record is already Resolved but still sits in the open queue.
        """
        for path in self._open_files():
            try:
                event = self._read_event(path)
            except EventStoreError:
                continue
            if event.status == OutageStatus.RESOLVED:
                logger.warning(
                    f"Moving resolved record {path.name} left in the open queue",
                    extra={"event_id": event.id},
                )
                self._move_to_finished(path)

    # ============================================
    # FINISHED QUEUE
    # ============================================

    def _finished_files(self) -> list[Path]:
        return sorted(
            (
                p for p in self.finished_dir.iterdir()
                if p.is_file() and not p.name.startswith(".")
            ),
            key=_start_key,
        )

    def list_finished(self) -> list[tuple[Path, bytes]]:
        records = []
        for path in self._finished_files():
            try:
                records.append((path, path.read_bytes()))
            except OSError as e:
                logger.warning(f"Could not read finished record {path.name}: {e}")
        return records

    def delete_finished(self, handle: Path) -> None:
        path = Path(handle)
        if path.parent != self.finished_dir:
            raise EventStoreError(f"{path} is not in the finished queue", path=str(path))
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise EventStoreError(f"error deleting {path.name}: {e}", path=str(path)) from e

    def pending_count(self) -> int:
        return len(self._finished_files())
