"""
Redis客户端 - 计数器与短期缓存

支付/推荐子系统只用到字符串与计数器操作：
- 点击频率计数（INCR + EXPIRE）
- IP 信誉查询结果的短期缓存
"""
from __future__ import annotations

import asyncio
import json
import socket
from typing import Any, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Redis客户端封装

    - 键名带命名空间前缀，值以 JSON 存储
    - 缓存读写失败只记录日志并返回默认值
    - 计数器失败向上抛出 RedisError，由风控服务记为不可用信号
    """

    def __init__(self, client: aioredis.Redis, namespace: str = ""):
        self._client = client
        self._namespace = namespace.strip(":")

    def _format_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    async def get(self, key: str, default: Any = None) -> Any:
        """获取JSON值"""
        formatted_key = self._format_key(key)
        try:
            value = await self._client.get(formatted_key)
        except RedisError as e:
            logger.error("redis_get_failed", key=formatted_key, error=str(e))
            return default
        if value is None:
            return default
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """写入JSON值"""
        formatted_key = self._format_key(key)
        try:
            payload = json.dumps(value, default=str, ensure_ascii=False)
            return bool(await self._client.set(formatted_key, payload, ex=ttl))
        except (RedisError, TypeError, ValueError) as e:
            logger.error("redis_set_failed", key=formatted_key, error=str(e))
            return False

    async def incr_with_ttl(self, key: str, ttl: int, amount: int = 1) -> int:
        """
        自增计数器，键没有过期时间时补设 ttl

        窗口从第一次计数开始；TTL 丢失（如进程在两步之间退出）时下次计数会补上。
        """
        formatted_key = self._format_key(key)
        pipe = self._client.pipeline(transaction=True)
        pipe.incrby(formatted_key, amount)
        pipe.ttl(formatted_key)
        try:
            value, remaining = await pipe.execute()
            if remaining is None or int(remaining) < 0:
                await self._client.expire(formatted_key, ttl)
        except RedisError as e:
            logger.error("redis_incr_failed", key=formatted_key, error=str(e))
            raise
        return int(value)


_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisClient] = None
_lock = asyncio.Lock()


async def init_redis_client(namespace: Optional[str] = None, **kwargs) -> RedisClient:
    """初始化全局Redis客户端"""
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        if not settings.redis.url:
            raise RuntimeError("REDIS__URL 未配置，无法初始化Redis客户端")

        keepalive_opts = {}
        if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
            keepalive_opts = {
                socket.TCP_KEEPIDLE: 1,
                socket.TCP_KEEPINTVL: 1,
                socket.TCP_KEEPCNT: 3,
            }

        client = aioredis.from_url(
            settings.redis.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.max_connections,
            socket_keepalive=True,
            socket_keepalive_options=keepalive_opts,
            **kwargs,
        )
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.error("redis_init_failed", error=str(e))
            await client.aclose()
            raise

        _redis_client = client
        _cache_instance = RedisClient(client=client, namespace=namespace or settings.redis.namespace)
        logger.info("redis_initialized", namespace=namespace or settings.redis.namespace)
        return _cache_instance


async def shutdown_redis_client() -> None:
    """关闭Redis连接"""
    global _redis_client, _cache_instance

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("redis_closed")
        except (RedisError, OSError) as e:
            logger.error("redis_close_failed", error=str(e))
        finally:
            _redis_client = None
            _cache_instance = None
