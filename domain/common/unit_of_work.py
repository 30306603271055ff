"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.currency.repository import ExchangeRateRepository
from domain.payment.repository import PaymentIntentRepository, RefundRepository, WebhookEventRepository
from domain.referral.repository import (
    ReferralLinkRepository,
    ReferralStatsRepository,
    ReferralTrackingRepository,
)

from .outbox import OutboxRepository


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象"""

    payment_repository: PaymentIntentRepository
    refund_repository: RefundRepository
    exchange_rate_repository: ExchangeRateRepository
    referral_link_repository: ReferralLinkRepository
    referral_stats_repository: ReferralStatsRepository
    tracking_repository: ReferralTrackingRepository
    outbox_repository: OutboxRepository
    webhook_event_repository: WebhookEventRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.payment_repository = None  # type: ignore[assignment]
        self.refund_repository = None  # type: ignore[assignment]
        self.exchange_rate_repository = None  # type: ignore[assignment]
        self.referral_link_repository = None  # type: ignore[assignment]
        self.referral_stats_repository = None  # type: ignore[assignment]
        self.tracking_repository = None  # type: ignore[assignment]
        self.outbox_repository = None  # type: ignore[assignment]
        self.webhook_event_repository = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""
        ...
