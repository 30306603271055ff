"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, BigInteger, String, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint
)
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentIntentModel(Base):
    """
    支付意图数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.PaymentIntent 中
    """
    __tablename__ = "payment_intents"

    id = Column(String(36), primary_key=True, comment="支付意图ID (UUID)")

    # 支付渠道信息
    provider = Column(String(20), nullable=False, index=True, comment="支付提供商: stripe/yookassa/coingate")
    provider_payment_id = Column(String(200), nullable=True, comment="支付渠道的支付ID")
    idempotency_key = Column(String(255), nullable=True, unique=True, comment="幂等键")

    # 金额信息（最小货币单位整数）
    amount = Column(BigInteger, nullable=False, comment="支付金额（最小单位）")
    currency = Column(String(5), nullable=False, comment="货币代码")
    refunded_amount = Column(BigInteger, nullable=False, default=0, comment="已退款（含处理中）金额")

    status = Column(
        String(30),
        nullable=False,
        default="pending",
        index=True,
        comment="状态: pending/requires_action/succeeded/failed/canceled/partially_refunded/refunded"
    )

    client_secret = Column(String(500), nullable=True, comment="客户端确认凭证（stripe）")
    redirect_url = Column(String(1000), nullable=True, comment="支付跳转地址")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据（推荐cookie、原币种金额等）")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")
    succeeded_at = Column(DateTime(timezone=True), nullable=True, comment="支付成功时间")

    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="uq_payment_intents_provider_payment"),
        Index("ix_payment_intents_provider_status", "provider", "status"),
    )

    def __repr__(self):
        return (
            f"<PaymentIntentModel(id='{self.id}', provider='{self.provider}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class RefundModel(Base):
    """
    退款数据库模型

    退款作为支付聚合的一部分，记录支付的退款明细
    """
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, comment="退款ID (UUID)")

    payment_intent_id = Column(
        String(36),
        ForeignKey("payment_intents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的支付意图ID"
    )

    provider = Column(String(20), nullable=False, comment="支付提供商")
    provider_refund_id = Column(String(200), nullable=True, comment="渠道退款ID")

    amount = Column(BigInteger, nullable=False, comment="退款金额（最小单位）")
    currency = Column(String(5), nullable=False, comment="货币代码")

    status = Column(String(20), nullable=False, default="pending", index=True, comment="退款状态: pending/succeeded/failed")
    reason = Column(Text, nullable=True, comment="退款原因")
    failure_reason = Column(Text, nullable=True, comment="失败原因")
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")

    __table_args__ = (
        UniqueConstraint("provider", "provider_refund_id", name="uq_refunds_provider_refund"),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id='{self.id}', payment_intent_id='{self.payment_intent_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )
