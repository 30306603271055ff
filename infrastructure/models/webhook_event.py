"""Webhook 接收记录表"""
from sqlalchemy import Column, String, DateTime, Boolean, Text, Index
from datetime import datetime, timezone

from .base import Base


class WebhookEventModel(Base):
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, comment="记录ID")
    provider = Column(String(20), nullable=False, comment="支付提供商")
    provider_event_id = Column(String(200), nullable=True, comment="渠道事件ID")
    event_type = Column(String(50), nullable=True, comment="归一化事件类型")
    raw_type = Column(String(100), nullable=True, comment="渠道原始事件类型")
    external_id = Column(String(200), nullable=True, comment="渠道支付/退款ID")
    payment_intent_id = Column(String(36), nullable=True, index=True, comment="关联的支付意图ID")
    accepted = Column(Boolean, nullable=False, comment="是否已向渠道确认")
    reason = Column(String(50), nullable=False, comment="处理结果")
    detail = Column(Text, nullable=True, comment="拒绝原因详情")
    received_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="接收时间",
    )

    __table_args__ = (
        Index("ix_webhook_events_provider_received", "provider", "received_at"),
        Index("ix_webhook_events_provider_event", "provider", "provider_event_id"),
    )
