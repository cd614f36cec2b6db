"""Advisory file locks shared by cooperating processes."""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from agent_teams.errors import LockError

try:
    import fcntl
except Exception:  # pragma: no cover
    fcntl = None

logger = logging.getLogger(__name__)

_warned_no_fcntl = False


def _warn_degraded() -> None:
    global _warned_no_fcntl
    if not _warned_no_fcntl:
        logger.warning("fcntl unavailable; file locking disabled. Multi-process safety is degraded.")
        _warned_no_fcntl = True


class FileLock:
    """Handle for a held lock. ``release()`` may be called more than once."""

    def __init__(self, path: Path, fd: int, exclusive: bool) -> None:
        self.path = path
        self.fd = fd
        self.exclusive = exclusive
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            if fcntl is not None:
                fcntl.flock(self.fd, fcntl.LOCK_UN)
        finally:
            os.close(self.fd)

    def __enter__(self) -> "FileLock":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def _open_lock_file(path: Path) -> int:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    except OSError as exc:
        raise LockError(f"Failed to open lock file {path}: {exc}") from exc


def acquire(path: Path, exclusive: bool = True) -> FileLock:
    """Block until the lock on ``path`` is granted."""
    fd = _open_lock_file(path)
    if fcntl is None:
        _warn_degraded()
        return FileLock(path, fd, exclusive)
    mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
    try:
        fcntl.flock(fd, mode)
    except OSError as exc:
        os.close(fd)
        raise LockError(f"Failed to acquire lock on {path}: {exc}") from exc
    return FileLock(path, fd, exclusive)


def try_acquire(path: Path, exclusive: bool = True) -> Optional[FileLock]:
    """Non-blocking variant; ``None`` when another holder conflicts."""
    fd = _open_lock_file(path)
    if fcntl is None:
        _warn_degraded()
        return FileLock(path, fd, exclusive)
    mode = (fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH) | fcntl.LOCK_NB
    try:
        fcntl.flock(fd, mode)
    except BlockingIOError:
        os.close(fd)
        return None
    except OSError as exc:
        os.close(fd)
        raise LockError(f"Failed to acquire lock on {path}: {exc}") from exc
    return FileLock(path, fd, exclusive)


@contextmanager
def file_lock(path: Path, exclusive: bool = True) -> Iterator[FileLock]:
    lock = acquire(path, exclusive=exclusive)
    try:
        yield lock
    finally:
        lock.release()
