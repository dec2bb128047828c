# redis_client/redis_client.py

"""
Redis client for cross-process coordination.
- Thread-safe singleton with connection pooling
- Lease locks (SET NX EX) guarding sandbox recreation
- Graceful degradation: without Redis, locks are granted locally
"""

import asyncio
import os
import logging
import threading
import uuid
from typing import Optional

import dotenv
import redis
from redis.connection import ConnectionPool

dotenv.load_dotenv()

logger = logging.getLogger(__name__)

# Compare-and-delete so a lease is only released by its holder
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisClient:
    """
    Redis client singleton with connection pooling.

    Client instances are thread-safe and shared; sync calls are pushed to a
    worker thread by the async helpers below.
    """

    _instance: Optional[redis.Redis] = None
    _pool: Optional[ConnectionPool] = None
    _lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> Optional[redis.Redis]:
        """
        Get or create Redis client instance (thread-safe).

        Returns:
            Redis client with connection pool, or None if unavailable
        """
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379")
                    try:
                        cls._pool = ConnectionPool.from_url(
                            redis_url,
                            decode_responses=True,
                            max_connections=10,
                            socket_connect_timeout=5,
                            socket_timeout=5,
                            socket_keepalive=True,
                            retry_on_timeout=True,
                            health_check_interval=30,
                        )
                        cls._instance = redis.Redis(connection_pool=cls._pool)
                        cls._instance.ping()
                        logger.info(f"✅ Redis connected: {redis_url}")

                    except redis.ConnectionError as e:
                        logger.error(f"❌ Redis connection failed: {e}")
                        logger.warning("⚠️ Falling back to process-local locking")
                        cls._instance = None
                        cls._pool = None

                    except Exception as e:
                        logger.error(f"❌ Redis setup error: {e}")
                        logger.warning("⚠️ Falling back to process-local locking")
                        cls._instance = None
                        cls._pool = None

        return cls._instance

    @classmethod
    def close(cls):
        """Close Redis connection pool"""
        if cls._pool:
            cls._pool.disconnect()
            logger.info("Redis connection pool closed")

        cls._instance = None
        cls._pool = None


def get_redis() -> Optional[redis.Redis]:
    """Get Redis client, or None if Redis is unavailable"""
    return RedisClient.get_instance()


def close_redis():
    """Close Redis connection pool"""
    RedisClient.close()


class LeaseLock:
    """
    Best-effort distributed lease keyed by name.

    ``acquire`` returns a token when the lease was obtained (or Redis is not
    available), None when another holder owns it. Leases expire after
    ``ttl`` seconds so a crashed holder cannot block recovery forever.
    """

    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = "lease"):
        self._client = client
        self._prefix = prefix

    def _resolve(self) -> Optional[redis.Redis]:
        return self._client if self._client is not None else get_redis()

    def _key(self, name: str) -> str:
        return f"{self._prefix}:{name}"

    async def acquire(self, name: str, ttl: int) -> Optional[str]:
        token = uuid.uuid4().hex
        client = self._resolve()
        if client is None:
            return token
        try:
            acquired = await asyncio.to_thread(
                client.set, self._key(name), token, nx=True, ex=ttl
            )
        except redis.RedisError as e:
            logger.warning(f"Redis lease acquire error for {name}: {e}")
            return token
        if acquired:
            logger.debug(f"Lease acquired: {name} (ttl={ttl}s)")
            return token
        logger.info(f"Lease busy: {name}")
        return None

    async def release(self, name: str, token: str) -> bool:
        client = self._resolve()
        if client is None:
            return True
        try:
            released = await asyncio.to_thread(
                client.eval, _RELEASE_SCRIPT, 1, self._key(name), token
            )
            return bool(released)
        except redis.RedisError as e:
            logger.warning(f"Redis lease release error for {name}: {e}")
            return False
