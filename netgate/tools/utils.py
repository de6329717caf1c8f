"""Small shared utilities for netgate.

Helpers for JSON I/O, Rich printing, timestamp formatting.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from rich.console import Console

logger = logging.getLogger("netgate")

# ---------------------------------------------------------------------------
# Rich console (stderr, so ``--json`` output on stdout stays clean)
# ---------------------------------------------------------------------------

console = Console(stderr=True)


def rprint(msg: str, *, style: str = "") -> None:
    """Print with Rich styling."""
    console.print(msg, style=style)


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

def write_json(data: Any, path: str | Path) -> Path:
    """Write *data* as pretty-printed JSON and return the resolved path."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, default=str)
    return p


def read_json(path: str | Path) -> Any:
    """Read JSON from *path* and return the parsed object."""
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

def utcnow_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def utcnow_compact() -> str:
    """Return the current UTC time as ``YYYYmmddTHHMMSSZ`` for file names."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


# ---------------------------------------------------------------------------
# Cancellable sleep
# ---------------------------------------------------------------------------

def wait_or_cancel(seconds: float, cancel: Optional[threading.Event]) -> bool:
    """Sleep up to *seconds*; return ``True`` if *cancel* fired meanwhile."""
    if cancel is None:
        threading.Event().wait(seconds)
        return False
    return cancel.wait(seconds)
