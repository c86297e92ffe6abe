"""
In-process telemetry buffer.

Appends and drains share one lock. A drain swaps the category's list for a
fresh one, so an append that races a flush lands in the new batch.

A category whose threshold batch has been handed out is held until the
caller releases it, so at most one threshold write per category is in
flight. Each category keeps at most ``max_backlog`` entries; the oldest are
dropped first.
"""

import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class TelemetryBuffer:
    """Per-category lists of pending realtime entries."""

    def __init__(
        self,
        max_size: int = 100,
        clock: Callable[[], datetime] | None = None,
        max_backlog: int = 10_000,
    ):
        self.max_size = max_size
        self.max_backlog = max(max_backlog, max_size)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._items: dict[str, list[dict[str, Any]]] = {}
        self._held: set[str] = set()
        self.drain_count = 0
        self.dropped_count = 0

    def append(self, category: str, item: dict[str, Any]) -> list[dict[str, Any]] | None:
        """Add an entry stamped with ``capturedAt``.

        Returns the drained batch when the category grows past ``max_size``
        and is not held, otherwise ``None``. The caller owns the returned
        batch and must ``release`` the category once it is written.
        """
        entry = {**item, "capturedAt": self._clock().isoformat()}
        with self._lock:
            batch = self._items.setdefault(category, [])
            batch.append(entry)
            if len(batch) > self.max_size and category not in self._held:
                self._items[category] = []
                self._held.add(category)
                self.drain_count += 1
                return batch
            dropped = self._trim(category)
        self._log_dropped(category, dropped)
        return None

    def release(self, category: str) -> None:
        """Allow the next threshold batch for ``category``."""
        with self._lock:
            self._held.discard(category)

    def is_held(self, category: str) -> bool:
        with self._lock:
            return category in self._held

    def drain(self) -> dict[str, list[dict[str, Any]]]:
        """Take every non-empty batch, leaving empty lists behind."""
        with self._lock:
            drained = {category: batch for category, batch in self._items.items() if batch}
            for category in drained:
                self._items[category] = []
            if drained:
                self.drain_count += 1
        return drained

    def requeue(self, category: str, batch: list[dict[str, Any]]) -> None:
        """Put a batch that failed to flush back in front of newer entries."""
        if not batch:
            return
        with self._lock:
            self._items[category] = batch + self._items.get(category, [])
            dropped = self._trim(category)
        self._log_dropped(category, dropped)

    def size(self, category: str | None = None) -> int:
        with self._lock:
            if category is not None:
                return len(self._items.get(category, []))
            return sum(len(batch) for batch in self._items.values())

    def _trim(self, category: str) -> int:
        # Caller holds the lock
        batch = self._items[category]
        excess = len(batch) - self.max_backlog
        if excess <= 0:
            return 0
        del batch[:excess]
        self.dropped_count += excess
        return excess

    @staticmethod
    def _log_dropped(category: str, dropped: int) -> None:
        if dropped:
            logger.warning("telemetry.buffer_overflow", category=category, dropped=dropped)
