"""
Bookkeeping for every file the service creates and must eventually delete.

The ArtifactRegistry maps absolute paths to the moment they were registered.
Uploads and reserved outputs are registered by the WorkspaceManager; the
RetentionSweeper periodically evicts entries older than the configured TTL
and removes their backing files.

The registry is the only shared mutable state in the service. A single lock
guards it, so a path registered by a request thread is always visible to the
next sweep.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True)
class ArtifactRecord:
    """
    One tracked file.

    Attributes:
        path: Absolute path, unique key in the registry
        created_at: Clock reading taken at registration
    """

    path: Path
    created_at: float

    def age(self, now: float) -> float:
        return now - self.created_at


class ArtifactRegistry:
    """
    Thread-safe mapping of artifact path to registration time.

    Thread Safety:
        Every read and write acquires the same plain Lock; registration from
        request threads and sweeps from the background thread never
        interleave. Reads are not shared between threads either: each
        critical section is a short dict operation, so a reader/writer lock
        would buy nothing over a single Lock.

    Args:
        clock: Monotonic time source in seconds (default: time.monotonic).
            Tests inject a fake clock to move time forward.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[Path, ArtifactRecord] = {}
        self._lock = Lock()

    @staticmethod
    def _key(path: PathLike) -> Path:
        return Path(path).resolve()

    def register(self, path: PathLike) -> Path:
        """
        Start tracking ``path`` for eventual deletion.

        Registering an already tracked path keeps the original timestamp.

        Returns:
            The normalized absolute path used as the registry key
        """
        key = self._key(path)
        with self._lock:
            if key not in self._entries:
                self._entries[key] = ArtifactRecord(path=key, created_at=self._clock())
        return key

    def sweep_expired(self, ttl: float) -> int:
        """
        Evict every entry older than ``ttl`` seconds and delete its file.

        Deletion is best effort: a failure is logged and the entry is dropped
        anyway so a stuck file cannot be swept forever. A file that never got
        written is a silent no-op.

        Returns:
            Number of entries evicted
        """
        with self._lock:
            now = self._clock()
            expired = [record for record in self._entries.values() if record.age(now) > ttl]
            for record in expired:
                _remove_file(record.path)
                del self._entries[record.path]

        if expired:
            logger.info("Cleaned up %d expired artifacts", len(expired))
        return len(expired)

    def discard(self, path: PathLike) -> bool:
        """
        Delete an artifact ahead of its TTL and stop tracking it.

        Used for intermediates that have been superseded within an operation.

        Returns:
            True if the path was tracked
        """
        key = self._key(path)
        with self._lock:
            record = self._entries.pop(key, None)
        _remove_file(key)
        return record is not None

    def snapshot(self) -> List[ArtifactRecord]:
        """Consistent copy of all entries, oldest first."""
        with self._lock:
            return sorted(self._entries.values(), key=lambda record: record.created_at)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, os.PathLike)):
            return False
        key = self._key(path)
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _remove_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to delete expired artifact %s: %s", path, exc)
