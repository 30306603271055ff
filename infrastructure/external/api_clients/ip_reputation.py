"""IP 信誉查询客户端（AbuseIPDB v2 兼容接口）"""
from __future__ import annotations

from dataclasses import asdict
from typing import Optional

import httpx

from core.logging_config import get_logger
from core.settings import IpReputationSettings
from domain.fraud.entity import IpReputation
from infrastructure.external.cache import RedisClient

from .base import APIError, BaseAPIClient

logger = get_logger(__name__)

DATACENTER_USAGE_TYPES = frozenset({
    "Data Center/Web Hosting/Transit",
    "Content Delivery Network",
})
CACHE_TTL_SECONDS = 3600


class AbuseIpReputationClient(BaseAPIClient):
    """
    GET {api_base}/check?ipAddress=...&maxAgeInDays=...

    结果按 IP 缓存一小时；缓存不可用时直接查询远端。
    查询失败抛出 APIError，由风控服务记为不可用信号。
    """

    def __init__(
        self,
        settings: IpReputationSettings,
        *,
        cache: Optional[RedisClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not settings.api_key:
            raise RuntimeError("REFERRAL_FRAUD__REPUTATION__API_KEY not configured")
        super().__init__(
            base_url=settings.api_base,
            timeout=settings.timeout,
            max_retries=0,
            headers={"Key": settings.api_key},
            transport=transport,
        )
        self._max_age_days = settings.max_age_days
        self._cache = cache

    async def lookup(self, ip_address: str) -> Optional[IpReputation]:
        cache_key = f"ip_reputation:{ip_address}"
        if self._cache is not None:
            cached = await self._cache.get(cache_key)
            if isinstance(cached, dict):
                return IpReputation(**cached)

        response = await self.get(
            "check",
            params={"ipAddress": ip_address, "maxAgeInDays": self._max_age_days},
        )
        payload = response.json()
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise APIError("Malformed reputation response", status_code=response.status_code)

        usage_type = data.get("usageType") or ""
        reputation = IpReputation(
            abuse_confidence=int(data.get("abuseConfidenceScore") or 0),
            is_datacenter=usage_type in DATACENTER_USAGE_TYPES,
            is_proxy=bool(data.get("isProxy", False)),
            is_tor=bool(data.get("isTor", False)),
            country=data.get("countryCode"),
        )
        if self._cache is not None:
            await self._cache.set(cache_key, asdict(reputation), ttl=CACHE_TTL_SECONDS)
        return reputation
