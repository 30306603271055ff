"""Redis 计数器与短期缓存"""
from .redis_client import RedisClient, init_redis_client, shutdown_redis_client


__all__ = ["RedisClient", "init_redis_client", "shutdown_redis_client"]
