import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from jobflow.config import settings
from jobflow.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    """Pooled async Redis client backing the notification queue."""

    def __init__(self, url: str | None = None):
        self.url = url or settings.REDIS_URL
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=20,
                retry_on_timeout=True,
                socket_connect_timeout=10,
                socket_timeout=30,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized", max_connections=20)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        """Push a value onto a Redis list used as a queue."""
        try:
            await self._ensure_initialized()
            if left:
                result = await self.client.lpush(key, value)
            else:
                result = await self.client.rpush(key, value)
            return result > 0
        except Exception as e:
            logger.error(
                "Redis LIST push failed", key=key[:30], value_preview=value[:30], error=str(e)
            )
            return False

    async def pop_to_inflight(
        self, source_key: str, inflight_key: str, timeout: int = 0
    ) -> str | None:
        """
        Pop a value from a list and push to an in-flight list (acked queue).

        Uses BLMOVE so a worker crash leaves the item in the in-flight list
        instead of losing it.
        """
        try:
            await self._ensure_initialized()
            if timeout > 0:
                return await self.client.blmove(
                    source_key, inflight_key, timeout, src="RIGHT", dest="LEFT"
                )
            return await self.client.lmove(source_key, inflight_key, src="RIGHT", dest="LEFT")
        except Exception as e:
            logger.error(
                "Redis LIST inflight pop failed",
                source_key=source_key[:30],
                inflight_key=inflight_key[:30],
                error=str(e),
            )
            return None

    async def ack_from_inflight(self, inflight_key: str, value: str) -> bool:
        """Remove a processed item from the in-flight list."""
        try:
            await self._ensure_initialized()
            removed = await self.client.lrem(inflight_key, 0, value)
            return removed > 0
        except Exception as e:
            logger.error("Redis inflight ack failed", inflight_key=inflight_key[:30], error=str(e))
            return False

    async def move_from_inflight(
        self, inflight_key: str, destination_key: str, value: str, replacement: str | None = None
    ) -> bool:
        """
        Atomically move an item from the in-flight list onto another list,
        optionally pushing an updated copy (e.g. with a bumped attempt count).
        """
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(inflight_key, 0, value)
                pipe.lpush(destination_key, replacement if replacement is not None else value)
                results = await pipe.execute()
            return bool(results and results[-1])
        except Exception as e:
            logger.error(
                "Redis inflight move failed",
                inflight_key=inflight_key[:30],
                destination_key=destination_key[:30],
                error=str(e),
            )
            return False

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        """Return a range of values from a list."""
        try:
            await self._ensure_initialized()
            result = await self.client.lrange(key, start, end)
            return [str(item) for item in result] if result else []
        except Exception as e:
            logger.error("Redis LRANGE failed", key=key[:30], error=str(e))
            return []


# Global instance
fast_redis = FastRedisClient()
