"""
点击频率计数器

- RedisClickVelocityCounter: 固定窗口计数，多实例共享
- InMemoryClickVelocityCounter: 进程内滑动窗口，单实例部署与测试使用
"""
from __future__ import annotations

import asyncio
import time
from collections import OrderedDict, deque
from typing import Callable, Deque

from infrastructure.external.cache import RedisClient


class RedisClickVelocityCounter:
    """INCR + EXPIRE 固定窗口：窗口从该键第一次点击开始计算"""

    def __init__(self, cache: RedisClient, prefix: str = "click_velocity"):
        self._cache = cache
        self._prefix = prefix

    async def hit(self, key: str, window_seconds: int) -> int:
        return await self._cache.incr_with_ttl(f"{self._prefix}:{key}", ttl=window_seconds)


class InMemoryClickVelocityCounter:
    """
    进程内滑动窗口计数

    键按最近一次点击排序：窗口外的键从头部淘汰，键数超过 max_keys 时淘汰最久未活动的键。
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_keys: int = 100_000):
        self._clock = clock
        self._max_keys = max_keys
        self._hits: "OrderedDict[str, Deque[float]]" = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._hits)

    async def hit(self, key: str, window_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            cutoff = now - window_seconds
            self._evict(cutoff)

            bucket = self._hits.pop(key, None) or deque()
            bucket.append(now)
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            self._hits[key] = bucket
            return len(bucket)

    def _evict(self, cutoff: float) -> None:
        while self._hits:
            oldest_key, oldest = next(iter(self._hits.items()))
            if oldest[-1] > cutoff and len(self._hits) < self._max_keys:
                break
            del self._hits[oldest_key]
