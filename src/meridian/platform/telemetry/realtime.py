"""
Redis-backed realtime telemetry store.

One sorted set per category (``telemetry:events``, ``telemetry:metrics``),
scored by flush time in epoch milliseconds. Entries older than the rolling
window are trimmed on every write.
"""

import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from ..redis_client import RedisClientType, redis_manager

logger = structlog.get_logger(__name__)


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class RealtimeStore:
    """Rolling-window sorted sets for dashboards."""

    def __init__(
        self,
        client: RedisClientType | None = None,
        key_prefix: str = "telemetry",
        window_hours: int = 24,
        clock: Callable[[], datetime] | None = None,
    ):
        self._client = client
        self.key_prefix = key_prefix
        self.window_ms = window_hours * 60 * 60 * 1000
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def client(self) -> RedisClientType:
        """The injected client, else the shared one. Raises ``RuntimeError`` if neither exists."""
        if self._client is not None:
            return self._client
        return redis_manager.get_client()

    def key(self, category: str) -> str:
        return f"{self.key_prefix}:{category}"

    async def write_batch(self, category: str, batch: list[dict[str, Any]]) -> None:
        """ZADD the batch and trim the window in one pipeline."""
        if not batch:
            return
        now_ms = _epoch_ms(self._clock())
        key = self.key(category)

        async with self.client.pipeline(transaction=False) as pipe:
            for item in batch:
                pipe.zadd(key, {json.dumps(item, sort_keys=True, default=str): now_ms})
            pipe.zremrangebyscore(key, "-inf", now_ms - self.window_ms)
            await pipe.execute()

        logger.debug("telemetry.flushed", category=category, count=len(batch))

    async def read_window(self, category: str, minutes: int) -> list[dict[str, Any]]:
        now_ms = _epoch_ms(self._clock())
        start_ms = now_ms - minutes * 60 * 1000
        raw = await self.client.zrangebyscore(self.key(category), start_ms, now_ms)
        return [json.loads(item) for item in raw]
