import logging
import os
from typing import Optional, Union

import redis.asyncio as redis

logger = logging.getLogger("DbMessenger.RedisManager")


class RedisManager:
    """
    Shared async Redis client for the idempotency index.

    Configured from ``REDIS_URL`` when set, otherwise from the individual
    ``REDIS_*`` variables. Only ``get``/``set`` are exposed because that is
    all the deduplication index needs.
    """

    _instance: Optional['RedisManager'] = None
    _redis_pool: Optional[redis.ConnectionPool] = None
    _redis_client: Optional[redis.Redis] = None

    def __new__(cls) -> 'RedisManager':
        """One connection pool per process."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if hasattr(self, '_initialized'):
            return

        self._initialized = True
        self.enabled = os.getenv("ENABLE_REDIS", "false").lower() == "true"
        self.url = os.getenv("REDIS_URL") or None
        self.pool_options = dict(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            db=int(os.getenv("REDIS_DB", "0")),
            username=os.getenv("REDIS_USERNAME") or None,
            password=os.getenv("REDIS_PASSWORD") or None,
        )
        self.max_connections = int(os.getenv("REDIS_MAX_CONNECTIONS", "10"))
        self.socket_timeout = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0"))

        if self.enabled:
            logger.info(f"Redis idempotency index enabled ({self.url or self.describe()})")

    def describe(self) -> str:
        return f"{self.pool_options['host']}:{self.pool_options['port']}/{self.pool_options['db']}"

    def _build_pool(self) -> redis.ConnectionPool:
        common = dict(
            max_connections=self.max_connections,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
            decode_responses=True,
        )
        if self.url:
            return redis.ConnectionPool.from_url(self.url, **common)
        return redis.ConnectionPool(**self.pool_options, **common)

    async def initialize(self) -> bool:
        """
        Connect and ping Redis.

        Returns:
            True if Redis answered; on failure Redis stays disabled for this process
        """
        if not self.enabled:
            return False

        try:
            self._redis_pool = self._build_pool()
            self._redis_client = redis.Redis(connection_pool=self._redis_pool)
            await self._redis_client.ping()
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {self.url or self.describe()}: {e}")
            self.enabled = False
            self._redis_client = None
            return False

        logger.info("Connected to Redis")
        return True

    async def disconnect(self):
        """Close the client and its pool."""
        if self._redis_client is not None:
            await self._redis_client.aclose()
            self._redis_client = None
        if self._redis_pool is not None:
            await self._redis_pool.aclose()
            self._redis_pool = None
        logger.info("Redis connections closed")

    def is_enabled(self) -> bool:
        """Enabled by configuration and connected."""
        return self.enabled and self._redis_client is not None

    async def get(self, key: str) -> Optional[str]:
        # Client errors propagate; the transport decides whether they are fatal
        if not self.is_enabled():
            return None
        return await self._redis_client.get(key)

    async def set(self, key: str, value: Union[str, int], ex: Optional[int] = None,
                  nx: bool = False) -> bool:
        """
        Write a key.

        Args:
            key: Redis key
            value: Value to store
            ex: Expiry in seconds
            nx: Only write if the key does not exist

        Returns:
            True if the key was written
        """
        if not self.is_enabled():
            return False
        return bool(await self._redis_client.set(key, value, ex=ex, nx=nx))


# Global Redis manager instance
redis_manager = RedisManager()
