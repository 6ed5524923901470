"""
Crash-safe file primitives

Writes go to a hidden temp file in the target directory and are renamed
into place, so readers see either the old content or the new content.
Directory entries are fsynced after every rename so the rename itself
survives a power cut.
"""

import os
from pathlib import Path


def fsync_dir(directory: Path) -> None:
    """Flush a directory entry table to disk (no-op on Windows)."""
    if os.name == "nt":
        return
    fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def temp_path_for(path: Path) -> Path:
    return path.with_name(f".{path.name}.tmp")


def write_atomic(path: Path, data: bytes) -> None:
    """Replace `path` with `data` in one rename."""
    path = Path(path)
    temp_path = temp_path_for(path)
    try:
        with open(temp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise
    fsync_dir(path.parent)


def move_atomic(source: Path, target: Path) -> None:
    """Rename `source` to `target` and flush both directories."""
    os.rename(source, target)
    fsync_dir(target.parent)
    if source.parent != target.parent:
        fsync_dir(source.parent)
