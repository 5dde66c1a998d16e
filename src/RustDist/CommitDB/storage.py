"""On-disk store helpers for the commit database caches.

Every store is a plain directory.  Records are written atomically through a
temporary sibling file so an interrupted update never leaves a truncated record
behind, and the directory modification time doubles as the store's freshness
marker.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional

__all__ = [
    "write_bytes_atomic",
    "write_json_atomic",
    "write_lines_atomic",
    "marker_age",
    "is_stale",
    "touch_marker",
    "preserve_marker",
    "RefreshOutcome",
]


def write_bytes_atomic(path: Path, payload: bytes) -> Path:
    """Atomically persist ``payload`` to ``path``."""

    resolved = path.expanduser()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "wb", dir=str(resolved.parent), prefix=".tmp-", delete=False
    ) as handle:
        handle.write(payload)
        handle.flush()
        try:
            os.fsync(handle.fileno())
        except (AttributeError, OSError):
            pass
        temp_name = handle.name
    Path(temp_name).replace(resolved)
    return resolved


def write_json_atomic(path: Path, payload: object) -> Path:
    """Atomically persist ``payload`` as compact JSON to ``path``."""

    return write_bytes_atomic(path, json.dumps(payload).encode("utf-8"))


def write_lines_atomic(path: Path, lines: Iterable[str]) -> Path:
    """Atomically persist ``lines`` to ``path``, one per line."""

    body = "".join(f"{line}\n" for line in lines)
    return write_bytes_atomic(path, body.encode("utf-8"))


def marker_age(path: Path, *, now: Optional[float] = None) -> Optional[float]:
    """Return seconds since ``path`` was last marked fresh, or ``None`` if it is missing."""

    try:
        mtime = path.stat().st_mtime
    except FileNotFoundError:
        return None
    current = time.time() if now is None else now
    return current - mtime


def is_stale(path: Path, max_age_seconds: float, *, now: Optional[float] = None) -> bool:
    """Return ``True`` when the store at ``path`` is missing or older than ``max_age_seconds``."""

    age = marker_age(path, now=now)
    return age is None or age >= max_age_seconds


def touch_marker(path: Path, *, now: Optional[float] = None) -> None:
    """Mark the store at ``path`` as refreshed at ``now`` (defaults to the current time)."""

    path.mkdir(parents=True, exist_ok=True)
    stamp = time.time() if now is None else now
    os.utime(path, (stamp, stamp))


@contextmanager
def preserve_marker(path: Path) -> Iterator[None]:
    """Undo any freshness the enclosed refresh gave ``path`` if it raises.

    Writing records can bump the store directory's modification time before
    the pass completes.  On failure the previous marker is restored, and a
    store created by the failed pass is backdated to the epoch so the next
    ``update`` retries.
    """

    try:
        previous: Optional[float] = path.stat().st_mtime
    except FileNotFoundError:
        previous = None
    try:
        yield
    except BaseException:
        if path.is_dir():
            stamp = 0.0 if previous is None else previous
            os.utime(path, (stamp, stamp))
        raise


@dataclass(frozen=True)
class RefreshOutcome:
    """Result of one cache ``update`` pass.

    Attributes:
        fetched: Number of records newly persisted to the store.
        skipped: ``True`` when the store was fresh and no remote call was made.
    """

    fetched: int = 0
    skipped: bool = False
