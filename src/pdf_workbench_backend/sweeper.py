"""
Background retention sweeper.

One daemon thread wakes on a fixed interval and asks the ArtifactRegistry to
evict everything older than the TTL. It knows nothing about in-flight
requests; eviction is driven purely by time since registration.
"""

from __future__ import annotations

import logging
from threading import Event, Thread
from typing import Optional

from .registry import ArtifactRegistry

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """
    Periodically sweeps expired artifacts until stopped.

    Args:
        registry: Registry to sweep
        ttl: Artifact time-to-live in seconds
        interval: Seconds between sweeps (default: 60)
    """

    def __init__(self, registry: ArtifactRegistry, ttl: float, interval: float = 60.0) -> None:
        self.registry = registry
        self.ttl = ttl
        self.interval = interval
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info("Retention sweeper started (ttl=%ss, interval=%ss)", self.ttl, self.interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Retention sweeper stopped")

    def run_once(self) -> int:
        return self.registry.sweep_expired(self.ttl)

    def _loop(self) -> None:
        # Event.wait doubles as an interruptible sleep
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Retention sweep failed")
