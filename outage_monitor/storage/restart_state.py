"""
Restart Timestamp File

Plain-text file holding the Unix epoch (seconds) of the last device
restart decision. Written with an atomic rename so a reader never sees a
half-written number.
"""

from datetime import datetime, timezone
from pathlib import Path

from ..common.exceptions import StateFileError
from .atomic import write_atomic


class RestartTimestampFile:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> datetime:
        try:
            text = self.path.read_text().strip()
        except OSError as e:
            raise StateFileError(f"error reading {self.path}: {e}", str(self.path)) from e

        try:
            epoch = int(text)
        except ValueError:
            raise StateFileError(f"invalid timestamp {text!r} in {self.path}", str(self.path))

        return datetime.fromtimestamp(epoch, timezone.utc)

    def write(self, ts: datetime) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            write_atomic(self.path, str(int(ts.timestamp())).encode("ascii"))
        except OSError as e:
            raise StateFileError(f"error writing {self.path}: {e}", str(self.path)) from e
