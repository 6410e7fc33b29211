"""
Atomic file writing with fsync and owner-only permissions.

Pattern:
  1. Write to temporary file in the same directory
  2. fchmod to the requested mode (0o600 by default) and fsync
  3. Rename atomically (atomic on POSIX filesystems)

Permissions are applied on every write, not only when the file is first
created, so a key that was loosened by hand is tightened again on rewrite.
"""
from __future__ import annotations

import os
import stat
import tempfile
from pathlib import Path

OWNER_RW = stat.S_IRUSR | stat.S_IWUSR            # 0o600
OWNER_RWX = stat.S_IRWXU                          # 0o700


def ensure_private_dir(path: Path) -> Path:
    """Create *path* (and parents) and force mode 0o700 on it."""
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, OWNER_RWX)
    return path


def fsync_dir(path: Path) -> None:
    """Flush a directory entry so a completed rename survives a crash."""
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_bytes(path: Path, content: bytes, mode: int = OWNER_RW) -> None:
    """
    Atomically write bytes to a file with fsync.

    Writes to a temp file in the same directory, fsyncs, then renames atomically.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )

    try:
        with os.fdopen(fd, "wb") as f:
            os.fchmod(f.fileno(), mode)
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8", mode: int = OWNER_RW) -> None:
    """Text wrapper around :func:`atomic_write_bytes`."""
    atomic_write_bytes(path, content.encode(encoding), mode=mode)
