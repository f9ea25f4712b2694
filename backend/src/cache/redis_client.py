"""
Redis client configuration with connection pooling and async support.

This module provides the Redis client used for the courier geo index:
connection pooling with retry, health checks, and the GEO set operations
(GEOADD, ZREM, GEOSEARCH) behind the Redis geo index adapter.
"""

from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Async Redis client with connection pooling and retry logic.

    Provides the GEO operations used by the courier geo index with automatic
    connection management and structured error logging.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        retry_on_timeout: bool = True,
        health_check_interval: int = 30,
    ):
        """
        Initialize Redis client settings; no connection is opened yet.

        Args:
            url: Redis connection URL (defaults to settings.redis_url)
            max_connections: Maximum pool connections (defaults to settings)
            socket_timeout: Socket operation timeout in seconds
            socket_connect_timeout: Socket connection timeout in seconds
            retry_on_timeout: Enable automatic retry on timeout
            health_check_interval: Health check interval in seconds
        """
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._retry_on_timeout = retry_on_timeout
        self._health_check_interval = health_check_interval

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """Remove the password from a Redis URL for logging."""
        if "@" in url:
            protocol, rest = url.split("://", 1)
            if "@" in rest:
                _, host_part = rest.split("@", 1)
                return f"{protocol}://***@{host_part}"
        return url

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self) -> None:
        """
        Establish Redis connection with retry logic.

        Creates connection pool and verifies connectivity with ping.

        Raises:
            ConnectionError: If connection cannot be established
        """
        if self._is_connected:
            logger.warning("Redis client already connected")
            return

        try:
            retry = Retry(
                ExponentialBackoff(base=0.1, cap=2.0),
                retries=3,
            )

            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                retry_on_timeout=self._retry_on_timeout,
                health_check_interval=self._health_check_interval,
                retry=retry,
                decode_responses=True,
            )

            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            self._is_connected = True

            logger.info(
                "Redis connection established",
                url=self._sanitize_url(self._url),
                pool_size=self._max_connections,
            )

        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                error=str(e),
                url=self._sanitize_url(self._url),
            )
            await self._close_pool()
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def _close_pool(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
        self._is_connected = False

    async def disconnect(self) -> None:
        """Close Redis connection and release the pool."""
        if not self._is_connected:
            return
        await self._close_pool()
        logger.info("Redis connection closed")

    async def health_check(self) -> bool:
        """
        Perform Redis health check.

        Returns:
            True if Redis is healthy and responsive, False otherwise
        """
        if not self._is_connected or not self._client:
            logger.warning("Redis health check failed: not connected")
            return False

        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.error(
                "Redis health check failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    def _ensure_connected(self) -> Redis:
        """
        Ensure Redis client is connected.

        Raises:
            ConnectionError: If client is not connected
        """
        if not self._is_connected or not self._client:
            raise ConnectionError("Redis client is not connected")
        return self._client

    async def geo_add(
        self, key: str, member: str, longitude: float, latitude: float
    ) -> int:
        """
        Add or move a member of a GEO set.

        Returns:
            Number of newly added members

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        client = self._ensure_connected()
        try:
            return await client.geoadd(key, (longitude, latitude, member))
        except RedisError as e:
            logger.error("Redis GEOADD failed", key=key, member=member, error=str(e))
            raise

    async def geo_remove(self, key: str, *members: str) -> int:
        """Remove members from a GEO set; returns the number removed."""
        client = self._ensure_connected()
        try:
            return await client.zrem(key, *members)
        except RedisError as e:
            logger.error("Redis ZREM failed", key=key, members=members, error=str(e))
            raise

    async def delete(self, *keys: str) -> int:
        """Delete keys; returns the number removed."""
        client = self._ensure_connected()
        try:
            return await client.delete(*keys)
        except RedisError as e:
            logger.error("Redis DEL failed", keys=keys, error=str(e))
            raise

    async def geo_search(
        self,
        key: str,
        longitude: float,
        latitude: float,
        radius_meters: float,
        count: int,
    ) -> list[tuple[str, float]]:
        """
        Members within ``radius_meters`` of a point, nearest first.

        Returns:
            List of (member, distance_meters) pairs

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        client = self._ensure_connected()
        try:
            rows = await client.geosearch(
                key,
                longitude=longitude,
                latitude=latitude,
                radius=radius_meters,
                unit="m",
                sort="ASC",
                count=count,
                withdist=True,
            )
        except RedisError as e:
            logger.error("Redis GEOSEARCH failed", key=key, error=str(e))
            raise
        return [(member, float(distance)) for member, distance in rows]


_redis_client: Optional[RedisClient] = None


async def get_redis_client() -> RedisClient:
    """
    Get or create global Redis client instance.

    Raises:
        ConnectionError: If Redis connection fails
    """
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


async def close_redis_client() -> None:
    """Close global Redis client connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
