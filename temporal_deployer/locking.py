"""
Advisory locks keeping deploy and backup runs from overlapping.
"""

import os
import fcntl
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)


class LockError(RuntimeError):
    """Raised when another run already holds the lock."""

    def __init__(self, path: Path, holder: str = ""):
        detail = f" (held by pid {holder})" if holder else ""
        super().__init__(f"Another run is in progress: {path}{detail}")
        self.path = path


@contextmanager
def advisory_lock(path: Path) -> Iterator[Path]:
    """
    Hold an exclusive, non-blocking ``flock`` on ``path`` for the block.

    The lock dies with the process, so a killed run never leaves a stale lock
    behind; the file itself is left in place.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = open(path, "a+")
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.seek(0)
            raise LockError(path, handle.read().strip())

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        logger.debug(f"Acquired lock {path}")
        try:
            yield path
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            logger.debug(f"Released lock {path}")
    finally:
        handle.close()
