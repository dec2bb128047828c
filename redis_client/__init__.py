from .redis_client import LeaseLock, RedisClient, close_redis, get_redis

__all__ = ["LeaseLock", "RedisClient", "close_redis", "get_redis"]
