"""事件发件箱仓储接口"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Optional

from .events import DomainEvent


@dataclass
class OutboxMessage:
    id: str
    name: str
    payload: dict[str, Any]
    created_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None


class OutboxRepository(ABC):
    """与状态变更同一事务写入领域事件，提交后再投递"""

    @abstractmethod
    async def add(self, event: DomainEvent) -> None:
        pass

    @abstractmethod
    async def list_pending(self, limit: int = 100) -> List[OutboxMessage]:
        pass

    @abstractmethod
    async def mark_dispatched(self, event_ids: Iterable[str]) -> int:
        pass
