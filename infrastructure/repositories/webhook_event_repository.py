"""Webhook 接收记录仓储实现"""
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.entity import WebhookEventRecord
from domain.payment.repository import WebhookEventRepository
from infrastructure.models.webhook_event import WebhookEventModel


class SQLAlchemyWebhookEventRepository(WebhookEventRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, record: WebhookEventRecord) -> None:
        self.session.add(
            WebhookEventModel(
                id=record.id,
                provider=record.provider,
                provider_event_id=record.provider_event_id,
                event_type=record.event_type,
                raw_type=record.raw_type,
                external_id=record.external_id,
                payment_intent_id=record.payment_intent_id,
                accepted=record.accepted,
                reason=record.reason,
                detail=record.detail,
                received_at=record.received_at,
            )
        )
        await self.session.flush()

    async def list_recent(self, *, provider: Optional[str] = None, limit: int = 100) -> List[WebhookEventRecord]:
        stmt = select(WebhookEventModel)
        if provider:
            stmt = stmt.where(WebhookEventModel.provider == provider)
        result = await self.session.execute(
            stmt.order_by(WebhookEventModel.received_at.desc()).limit(limit)
        )
        return [
            WebhookEventRecord(
                id=m.id,
                provider=m.provider,
                accepted=bool(m.accepted),
                reason=m.reason,
                provider_event_id=m.provider_event_id,
                event_type=m.event_type,
                raw_type=m.raw_type,
                external_id=m.external_id,
                payment_intent_id=m.payment_intent_id,
                detail=m.detail,
                received_at=m.received_at,
            )
            for m in result.scalars().all()
        ]
