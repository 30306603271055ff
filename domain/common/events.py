"""
Base class for domain events.

Events are plain dataclasses recorded by the domain/application layer and
written to the outbox in the same transaction as the state change that
produced them. Delivery happens in infrastructure.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(kw_only=True)
class DomainEvent:
    name: ClassVar[str] = "domain.event"

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        payload = {k: _jsonable(v) for k, v in asdict(self).items()}
        payload["name"] = self.name
        return payload
