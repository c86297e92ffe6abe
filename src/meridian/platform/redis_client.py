"""
Shared Redis client.

The realtime telemetry store reads and writes through this client; the
Celery worker opens its own synchronous connection for the dead-letter list.
"""

from typing import Any

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from meridian.platform.settings import settings

logger = structlog.get_logger(__name__)

type RedisClientType = Redis[Any]


class RedisClientManager:
    """Process-wide pooled client. Tests install fakeredis with ``use_client``."""

    _instance: "RedisClientManager | None" = None
    _pool: ConnectionPool | None = None
    _client: RedisClientType | None = None

    def __new__(cls) -> "RedisClientManager":
        """Ensure singleton instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(
        self,
        url: str | None = None,
        max_connections: int | None = None,
        socket_timeout: int = 5,
        socket_connect_timeout: int = 5,
        **kwargs: Any,
    ) -> None:
        """
        Initialize Redis connection pool.

        Args:
            url: Redis URL (defaults to settings.redis.redis_url)
            max_connections: Maximum pool connections
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Socket connect timeout in seconds
            **kwargs: Additional Redis connection parameters
        """
        if self._pool is not None:
            logger.warning("redis.already_initialized")
            return

        url = url or settings.redis.redis_url

        try:
            self._pool = ConnectionPool.from_url(
                url,
                decode_responses=settings.redis.decode_responses,
                max_connections=max_connections or settings.redis.max_connections,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_connect_timeout,
                **kwargs,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()

            logger.info("redis.initialized", host=settings.redis.host, port=settings.redis.port)

        except RedisError as e:
            logger.error("redis.initialization_failed", error=str(e))
            raise

    def use_client(self, client: RedisClientType) -> None:
        """Install an externally created client (fakeredis in tests)."""
        self._client = client

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None

        if self._pool:
            await self._pool.disconnect()
            self._pool = None

        logger.info("redis.closed")

    def get_client(self) -> RedisClientType:
        """
        Get Redis client instance.

        Raises:
            RuntimeError: If client not initialized
        """
        if self._client is None:
            raise RuntimeError("Redis client not initialized. Call initialize() first.")
        return self._client

    async def health_check(self) -> dict[str, Any]:
        """Perform Redis health check."""
        if self._client is None:
            return {"status": "unhealthy", "message": "Redis client not initialized"}

        try:
            await self._client.ping()
            return {"status": "healthy"}
        except RedisError as e:
            logger.error("redis.health_check_failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}


redis_manager = RedisClientManager()


async def init_redis() -> None:
    """Connect the shared client used by the realtime telemetry store."""
    await redis_manager.initialize()


async def shutdown_redis() -> None:
    await redis_manager.close()
