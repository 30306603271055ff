"""Domain event delivery tasks"""
from __future__ import annotations

import asyncio
from typing import Any, Dict

from celery import shared_task

from ..utils.base_task import BaseTask
from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


@shared_task(
    bind=True,
    base=BaseTask,
    name="events.handle_domain_event",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def handle_domain_event(self, name: str, payload: Dict[str, Any]) -> None:
    """Consume one published domain event.

    Downstream consumers (order fulfilment, payouts, notifications) hook in
    here and must dedupe on ``payload["event_id"]``.
    """
    logger.info(
        "domain_event_received",
        event_name=name,
        event_id=payload.get("event_id"),
        aggregate_id=payload.get("payment_intent_id") or payload.get("referral_link_id"),
    )


async def _flush_outbox(limit: int) -> int:
    from api.dependencies import build_services
    from infrastructure.database import engine
    from infrastructure.external.payments import build_payment_gateways

    # full wiring so local handlers (referral attribution) are registered
    services = build_services(build_payment_gateways())
    try:
        return await services.event_dispatcher.flush_pending(limit)
    finally:
        await services.aclose()
        # the pool is bound to this event loop
        await engine.dispose()


@shared_task(bind=True, base=BaseTask, name="events.flush_outbox")
def flush_outbox(self, limit: int | None = None) -> int:
    """Re-deliver outbox events that were not published after commit."""
    return asyncio.run(_flush_outbox(limit or settings.OUTBOX_FLUSH_BATCH_SIZE))
