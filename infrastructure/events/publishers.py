"""
Domain event publishers used by the outbox dispatcher.

- CeleryEventPublisher hands each event to the ``events.handle_domain_event``
  task; the broker is the delivery boundary.
- LoggingEventPublisher only writes a structured log line (development and
  deployments without a broker).
"""
from __future__ import annotations

from typing import Any

from core.logging_config import get_logger


logger = get_logger(__name__)


class CeleryEventPublisher:
    def __init__(self, task=None):
        if task is None:
            from infrastructure.tasks.tasks.events import handle_domain_event

            task = handle_domain_event
        self._task = task

    async def publish(self, name: str, payload: dict[str, Any]) -> None:
        # apply_async honours task_always_eager, send_task does not
        self._task.apply_async(kwargs={"name": name, "payload": payload})
        logger.debug("domain_event_enqueued", event_name=name, event_id=payload.get("event_id"))


class LoggingEventPublisher:
    async def publish(self, name: str, payload: dict[str, Any]) -> None:
        logger.info("domain_event_published", event_name=name, event_id=payload.get("event_id"), payload=payload)


def build_event_publisher():
    from core.config import settings

    if settings.redis.url:
        return CeleryEventPublisher()
    return LoggingEventPublisher()
