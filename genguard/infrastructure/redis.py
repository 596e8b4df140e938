#!/usr/bin/env python3
"""
Redis Connection with Connection Pooling

Owns the ``redis.asyncio`` connection pool shared by the Redis job store and the
job event publisher.

Architectural Decision: Connection pooling for performance
- Reuse connections instead of creating new ones
- Health checks every ``REDIS_HEALTH_CHECK_INTERVAL`` seconds
- Fail fast at startup if Redis is unreachable
"""

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import ConnectionError, TimeoutError

from genguard.core.config.settings import RedisSettings, get_settings
from genguard.core.exceptions.queue import JobStoreError
from genguard.core.logging.logger import get_logger

logger = get_logger(__name__)


class RedisConnection:
    """
    Async Redis connection with pooling.

    STAGE-REDIS: Redis client initialization

    Usage:
        connection = RedisConnection(settings.redis)
        client = await connection.connect()
        ...
        await connection.disconnect()
    """

    def __init__(self, settings: RedisSettings | None = None):
        self.settings = settings or get_settings().redis
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._is_connected = False

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self) -> redis.Redis:
        """
        Establish connection to Redis.

        STAGE-REDIS.2: Connection establishment

        Raises:
            JobStoreError: If connection fails
        """
        if self._is_connected and self.client is not None:
            return self.client

        try:
            self.pool = ConnectionPool(
                host=self.settings.REDIS_HOST,
                port=self.settings.REDIS_PORT,
                db=self.settings.REDIS_DB,
                password=self.settings.REDIS_PASSWORD,
                max_connections=self.settings.REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=self.settings.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=self.settings.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=True,
                health_check_interval=self.settings.REDIS_HEALTH_CHECK_INTERVAL,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)
            await self.client.ping()
            self._is_connected = True

            logger.info(
                "Redis connected successfully",
                stage="REDIS.2",
                host=self.settings.REDIS_HOST,
                port=self.settings.REDIS_PORT,
                max_connections=self.settings.REDIS_MAX_CONNECTIONS,
            )
            return self.client

        except (ConnectionError, TimeoutError) as e:
            logger.error("Failed to connect to Redis", stage="REDIS.2", error=str(e))
            raise JobStoreError(
                f"Failed to connect to Redis: {e}",
                details={"host": self.settings.REDIS_HOST, "port": self.settings.REDIS_PORT},
            ) from e

    async def disconnect(self) -> None:
        """
        Close Redis connection and pool.

        STAGE-REDIS.3: Connection cleanup
        """
        if self.client:
            await self.client.aclose()
        if self.pool:
            await self.pool.disconnect()
        self.client = None
        self.pool = None
        self._is_connected = False
        logger.info("Redis disconnected", stage="REDIS.3")

    async def ping(self) -> bool:
        try:
            if self.client and self._is_connected:
                await self.client.ping()
                return True
        except (ConnectionError, TimeoutError):
            pass
        return False
