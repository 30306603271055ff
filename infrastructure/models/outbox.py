"""事件发件箱表"""
from sqlalchemy import Column, String, DateTime, JSON, Index
from datetime import datetime, timezone

from .base import Base


class OutboxEventModel(Base):
    __tablename__ = "outbox_events"

    id = Column(String(36), primary_key=True, comment="事件ID")
    name = Column(String(100), nullable=False, comment="事件名")
    payload = Column(JSON, nullable=False, comment="事件内容")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="写入时间",
    )
    dispatched_at = Column(DateTime(timezone=True), nullable=True, comment="投递时间")

    __table_args__ = (
        Index("ix_outbox_events_pending", "dispatched_at", "created_at"),
    )
