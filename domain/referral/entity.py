"""
推荐（联盟）领域实体

- ReferralLink: 推荐链接，referral_code 全局唯一且签发后不可修改
- ReferralStats: 链接统计，仅通过原子自增变更
- ReferralTrackingRecord: 点击追踪记录（cookie），购买时最多被认领一次
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import new_id, _ensure_utc


# No 0/O/1/I to keep codes readable when shared by hand
REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class RewardType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


def generate_referral_code(length: int = 8) -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))


def generate_cookie_value() -> str:
    return secrets.token_hex(32)


@dataclass
class ReferralLink:
    """
    推荐链接

    业务规则：
    1. 必须指向商品或店铺（至少其一）
    2. 百分比奖励在 (0, 100] 之间；固定奖励为正的最小单位金额
    """

    id: str
    referrer_id: str
    referral_code: str
    reward_type: RewardType
    reward_value: Decimal
    product_id: Optional[str] = None
    shop_id: Optional[str] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.reward_type = RewardType(self.reward_type)
        self.reward_value = Decimal(str(self.reward_value))
        if not self.product_id and not self.shop_id:
            raise DomainValidationException("Referral link needs a product or shop target", field="product_id")
        if self.reward_value <= 0:
            raise DomainValidationException("Reward value must be positive", field="reward_value")
        if self.reward_type == RewardType.PERCENTAGE and self.reward_value > 100:
            raise DomainValidationException("Percentage reward cannot exceed 100", field="reward_value")
        self.expires_at = _ensure_utc(self.expires_at)
        self.created_at = _ensure_utc(self.created_at)

    @classmethod
    def issue(
        cls,
        *,
        referrer_id: str,
        referral_code: str,
        reward_type: RewardType | str,
        reward_value: Decimal,
        product_id: Optional[str] = None,
        shop_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> "ReferralLink":
        return cls(
            id=new_id(),
            referrer_id=referrer_id,
            referral_code=referral_code,
            reward_type=RewardType(reward_type),
            reward_value=reward_value,
            product_id=product_id,
            shop_id=shop_id,
            expires_at=expires_at,
            created_at=datetime.now(timezone.utc),
        )

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """链接是否可用于新的点击"""
        if not self.is_active:
            return False
        if self.expires_at is not None and self.expires_at <= (now or datetime.now(timezone.utc)):
            return False
        return True

    def commission_for(self, purchase_amount: int) -> int:
        """
        计算佣金（最小单位整数）

        百分比: purchase_amount × reward_value / 100，四舍五入
        固定: reward_value，但不超过购买金额
        """
        if purchase_amount <= 0:
            return 0
        if self.reward_type == RewardType.PERCENTAGE:
            raw = Decimal(purchase_amount) * self.reward_value / Decimal(100)
            return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))
        return min(int(self.reward_value), purchase_amount)


@dataclass
class ReferralStats:
    referral_link_id: str
    click_count: int = 0
    purchase_count: int = 0
    total_earned: int = 0
    updated_at: Optional[datetime] = None


@dataclass
class ReferralTrackingRecord:
    """
    点击追踪记录

    生命周期：未被拦截的点击时创建；购买时通过条件更新认领一次；
    过期后不再可归因。
    """

    id: str
    referral_link_id: str
    referral_code: str
    cookie_value: str
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer_url: Optional[str] = None
    landing_page: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    risk_score: int = 0
    flagged: bool = False
    created_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None
    payment_intent_id: Optional[str] = None
    commission_amount: Optional[int] = None

    def __post_init__(self):
        self.expires_at = _ensure_utc(self.expires_at)
        self.created_at = _ensure_utc(self.created_at)
        self.converted_at = _ensure_utc(self.converted_at)

    @classmethod
    def issue(
        cls,
        link: ReferralLink,
        *,
        ttl: timedelta,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        referrer_url: Optional[str] = None,
        landing_page: Optional[str] = None,
        country: Optional[str] = None,
        city: Optional[str] = None,
        risk_score: int = 0,
        flagged: bool = False,
    ) -> "ReferralTrackingRecord":
        now = datetime.now(timezone.utc)
        return cls(
            id=new_id(),
            referral_link_id=link.id,
            referral_code=link.referral_code,
            cookie_value=generate_cookie_value(),
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            referrer_url=referrer_url,
            landing_page=landing_page,
            country=country,
            city=city,
            risk_score=risk_score,
            flagged=flagged,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or datetime.now(timezone.utc))

    @property
    def is_converted(self) -> bool:
        return self.converted_at is not None
