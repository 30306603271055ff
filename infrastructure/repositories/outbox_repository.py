"""事件发件箱仓储实现"""
from datetime import datetime, timezone
from typing import Iterable, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.events import DomainEvent
from domain.common.outbox import OutboxMessage, OutboxRepository
from infrastructure.models.outbox import OutboxEventModel


class SQLAlchemyOutboxRepository(OutboxRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, event: DomainEvent) -> None:
        self.session.add(
            OutboxEventModel(
                id=event.event_id,
                name=event.name,
                payload=event.to_payload(),
                created_at=event.occurred_at,
            )
        )
        await self.session.flush()

    async def list_pending(self, limit: int = 100) -> List[OutboxMessage]:
        result = await self.session.execute(
            select(OutboxEventModel)
            .where(OutboxEventModel.dispatched_at.is_(None))
            .order_by(OutboxEventModel.created_at.asc())
            .limit(limit)
        )
        return [
            OutboxMessage(
                id=m.id,
                name=m.name,
                payload=dict(m.payload or {}),
                created_at=m.created_at,
                dispatched_at=m.dispatched_at,
            )
            for m in result.scalars().all()
        ]

    async def mark_dispatched(self, event_ids: Iterable[str]) -> int:
        ids = list(event_ids)
        if not ids:
            return 0
        result = await self.session.execute(
            update(OutboxEventModel)
            .where(OutboxEventModel.id.in_(ids), OutboxEventModel.dispatched_at.is_(None))
            .values(dispatched_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
