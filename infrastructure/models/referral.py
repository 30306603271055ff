"""
推荐系统数据库模型
"""
from sqlalchemy import (
    Column, BigInteger, Integer, String, Numeric, DateTime, Boolean, Text,
    Index, ForeignKey
)
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReferralLinkModel(Base):
    __tablename__ = "referral_links"

    id = Column(String(36), primary_key=True, comment="推荐链接ID (UUID)")
    referrer_id = Column(String(64), nullable=False, index=True, comment="推荐人ID")
    referral_code = Column(String(16), nullable=False, unique=True, comment="推荐码（不可变）")
    product_id = Column(String(64), nullable=True, index=True, comment="商品ID")
    shop_id = Column(String(64), nullable=True, index=True, comment="店铺ID")
    reward_type = Column(String(20), nullable=False, comment="奖励类型: percentage/fixed")
    reward_value = Column(Numeric(precision=12, scale=4), nullable=False, comment="百分比或固定金额（最小单位）")
    is_active = Column(Boolean, nullable=False, default=True, comment="是否启用")
    expires_at = Column(DateTime(timezone=True), nullable=True, comment="过期时间")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")

    def __repr__(self):
        return f"<ReferralLinkModel(id='{self.id}', code='{self.referral_code}')>"


class ReferralStatsModel(Base):
    __tablename__ = "referral_stats"

    referral_link_id = Column(
        String(36),
        ForeignKey("referral_links.id", ondelete="CASCADE"),
        primary_key=True,
        comment="推荐链接ID",
    )
    click_count = Column(Integer, nullable=False, default=0, comment="点击数")
    purchase_count = Column(Integer, nullable=False, default=0, comment="成交数")
    total_earned = Column(BigInteger, nullable=False, default=0, comment="累计佣金（最小单位）")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")


class ReferralTrackingModel(Base):
    __tablename__ = "referral_tracking"

    id = Column(String(36), primary_key=True, comment="追踪记录ID (UUID)")
    referral_link_id = Column(
        String(36),
        ForeignKey("referral_links.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="推荐链接ID",
    )
    referral_code = Column(String(16), nullable=False, comment="推荐码")
    cookie_value = Column(String(64), nullable=False, unique=True, comment="追踪cookie")

    ip_address = Column(String(45), nullable=True, comment="访客IP")
    user_agent = Column(Text, nullable=True, comment="User-Agent")
    referrer_url = Column(Text, nullable=True, comment="来源页")
    landing_page = Column(Text, nullable=True, comment="落地页")
    country = Column(String(64), nullable=True, comment="国家")
    city = Column(String(128), nullable=True, comment="城市")

    risk_score = Column(Integer, nullable=False, default=0, comment="欺诈风险分 0-100")
    flagged = Column(Boolean, nullable=False, default=False, comment="是否标记待审核")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="点击时间")
    expires_at = Column(DateTime(timezone=True), nullable=False, comment="归因截止时间")
    converted_at = Column(DateTime(timezone=True), nullable=True, comment="转化时间")
    payment_intent_id = Column(String(36), nullable=True, comment="归因的支付意图ID")
    commission_amount = Column(BigInteger, nullable=True, comment="佣金（最小单位）")

    __table_args__ = (
        Index("ix_referral_tracking_expiry", "converted_at", "expires_at"),
    )
