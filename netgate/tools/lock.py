"""Exclusive gate lock.

Two operators must not run overlapping remediation cycles against the same
cluster. The lock is an ``flock`` on a file in the diagnostics directory;
the kernel releases it if the process dies.
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO, Optional

from netgate.errors import GateLockedError

logger = logging.getLogger("netgate.lock")


class GateLock:
    """Non-blocking exclusive lock, usable as a context manager."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fh: Optional[IO[str]] = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            fh.seek(0)
            holder = fh.read().strip() or "unknown"
            fh.close()
            raise GateLockedError(
                f"another gate run holds {self.path} (pid {holder})"
            ) from exc
        fh.seek(0)
        fh.truncate()
        fh.write(str(os.getpid()))
        fh.flush()
        self._fh = fh
        logger.debug("Acquired gate lock %s", self.path)

    def release(self) -> None:
        if self._fh is None:
            return
        fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
        self._fh.close()
        self._fh = None
        logger.debug("Released gate lock %s", self.path)

    def __enter__(self) -> "GateLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
