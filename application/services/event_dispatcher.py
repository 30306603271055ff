"""
Post-commit delivery of outbox events.

Events are written to the outbox inside the state-change transaction. After
commit the service hands them to ``dispatch``; anything not delivered stays
pending and is retried by ``flush_pending`` (``events.flush_outbox`` task).
Delivery is at-least-once: consumers dedupe on ``event_id``.

Events with a registered local handler are consumed in-process instead of
being published. A handler that raises leaves the row pending, so the next
flush runs it again; handlers must be idempotent.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable, Optional

from application.ports.events import EventPublisher
from core.logging_config import get_logger
from domain.common.events import DomainEvent
from domain.common.unit_of_work import AbstractUnitOfWork


logger = get_logger(__name__)

LocalHandler = Callable[[dict[str, Any]], Awaitable[None]]


class EventDispatcher:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        publisher: EventPublisher,
        handlers: Optional[dict[str, LocalHandler]] = None,
    ):
        self._uow_factory = uow_factory
        self._publisher = publisher
        self._handlers: dict[str, LocalHandler] = dict(handlers or {})

    def register(self, name: str, handler: LocalHandler) -> None:
        self._handlers[name] = handler

    async def _deliver(self, name: str, payload: dict[str, Any]) -> None:
        handler = self._handlers.get(name)
        if handler is not None:
            await handler(payload)
        else:
            await self._publisher.publish(name, payload)

    async def dispatch(self, events: Iterable[DomainEvent]) -> int:
        """Deliver committed events and mark the delivered ones."""
        delivered: list[str] = []
        for event in events:
            try:
                await self._deliver(event.name, event.to_payload())
            except Exception as exc:
                # row stays pending; flush_outbox retries it
                logger.warning("event_publish_failed", event_name=event.name, event_id=event.event_id, error=str(exc))
                continue
            delivered.append(event.event_id)
        if delivered:
            await self._mark(delivered)
        return len(delivered)

    async def flush_pending(self, limit: int = 100) -> int:
        """Re-deliver outbox rows that were never marked dispatched."""
        async with self._uow_factory(readonly=True) as uow:
            messages = await uow.outbox_repository.list_pending(limit)
        delivered: list[str] = []
        for message in messages:
            try:
                await self._deliver(message.name, message.payload)
            except Exception as exc:
                logger.warning("event_publish_failed", event_name=message.name, event_id=message.id, error=str(exc))
                # keep ordering: stop at the first failure
                break
            delivered.append(message.id)
        if delivered:
            await self._mark(delivered)
        logger.info("outbox_flushed", pending=len(messages), delivered=len(delivered))
        return len(delivered)

    async def _mark(self, event_ids: list[str]) -> None:
        try:
            async with self._uow_factory() as uow:
                await uow.outbox_repository.mark_dispatched(event_ids)
        except Exception as exc:
            # events were delivered; a later flush re-delivers them (consumers dedupe)
            logger.error("outbox_mark_failed", event_ids=event_ids, error=str(exc))
