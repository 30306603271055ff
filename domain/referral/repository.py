"""
推荐仓储接口

统计计数只允许原子自增；追踪记录的认领是一条条件更新，
保证同一个 cookie 最多归因一次。
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from .entity import ReferralLink, ReferralStats, ReferralTrackingRecord


class ReferralLinkRepository(ABC):

    @abstractmethod
    async def add(self, link: ReferralLink) -> ReferralLink:
        """创建推荐链接；推荐码冲突时抛出 ReferralCodeConflictException"""
        pass

    @abstractmethod
    async def get_by_id(self, link_id: str) -> Optional[ReferralLink]:
        pass

    @abstractmethod
    async def get_by_code(self, referral_code: str) -> Optional[ReferralLink]:
        """根据推荐码获取推荐链接"""
        pass


class ReferralStatsRepository(ABC):

    @abstractmethod
    async def create(self, referral_link_id: str) -> ReferralStats:
        """为新链接创建全零统计行"""
        pass

    @abstractmethod
    async def get(self, referral_link_id: str) -> Optional[ReferralStats]:
        pass

    @abstractmethod
    async def increment_clicks(self, referral_link_id: str, by: int = 1) -> None:
        """click_count = click_count + by"""
        pass

    @abstractmethod
    async def record_purchase(self, referral_link_id: str, commission_amount: int) -> None:
        """purchase_count + 1，total_earned + commission_amount"""
        pass


class ReferralTrackingRepository(ABC):

    @abstractmethod
    async def add(self, record: ReferralTrackingRecord) -> ReferralTrackingRecord:
        pass

    @abstractmethod
    async def get_by_cookie(self, cookie_value: str) -> Optional[ReferralTrackingRecord]:
        pass

    @abstractmethod
    async def claim(
        self,
        cookie_value: str,
        *,
        payment_intent_id: str,
        commission_amount: int,
        now: datetime,
    ) -> Optional[ReferralTrackingRecord]:
        """
        原子认领追踪记录

        条件：converted_at IS NULL AND expires_at > now。
        成功返回更新后的记录，否则返回 None。
        """
        pass

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        """删除已过期且未转化的记录，返回删除条数"""
        pass
