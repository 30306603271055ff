"""
API依赖项 - 应用服务装配

服务在应用启动时装配一次并挂到 app.state.services，路由通过 Depends 获取。
测试可通过 app.dependency_overrides 替换。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from fastapi import Depends, Request

from application.ports.payment_gateway import PaymentGateway
from application.services.currency_service import CurrencyConverter
from application.services.event_dispatcher import EventDispatcher
from application.services.fraud_service import FraudDetectionService, build_fraud_engine
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.referral_tracker import ReferralTracker
from application.services.webhook_reconciler import WebhookReconciler
from core.logging_config import get_logger
from core.settings import payment_settings, referral_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.events.publishers import build_event_publisher
from infrastructure.external.api_clients import AbuseIpReputationClient, ExchangeRateApiClient
from infrastructure.external.cache import RedisClient
from infrastructure.fraud.velocity import InMemoryClickVelocityCounter, RedisClickVelocityCounter
from infrastructure.unit_of_work import sqlalchemy_uow_factory


logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """进程内共享的应用服务"""

    orchestrator: PaymentOrchestrator
    referral_tracker: ReferralTracker
    event_dispatcher: EventDispatcher
    gateways: Mapping[str, PaymentGateway]
    # 需要在关闭时释放的 HTTP 客户端
    closables: list[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        for resource in [*self.gateways.values(), *self.closables]:
            try:
                await resource.aclose()
            except Exception as exc:
                logger.warning("service_close_failed", resource=type(resource).__name__, error=str(exc))


def build_services(
    gateways: Mapping[str, PaymentGateway],
    *,
    cache: Optional[RedisClient] = None,
    uow_factory: Callable[..., AbstractUnitOfWork] = sqlalchemy_uow_factory,
    publisher=None,
) -> ServiceContainer:
    """按配置装配服务；Redis 不可用时点击频率计数退化为进程内计数"""
    fraud_cfg = referral_settings.fraud
    closables: list[Any] = []

    dispatcher = EventDispatcher(uow_factory, publisher or build_event_publisher())

    rates_client = ExchangeRateApiClient(payment_settings.rates)
    closables.append(rates_client)
    converter = CurrencyConverter(uow_factory, rates_client, payment_settings.rates)

    velocity = RedisClickVelocityCounter(cache) if cache is not None else InMemoryClickVelocityCounter()
    reputation = None
    if fraud_cfg.reputation.api_key:
        reputation = AbuseIpReputationClient(fraud_cfg.reputation, cache=cache)
        closables.append(reputation)
    scorer, policy = build_fraud_engine(fraud_cfg)
    fraud_service = FraudDetectionService(
        scorer,
        policy,
        velocity_counter=velocity,
        reputation_lookup=reputation,
        velocity_window_seconds=fraud_cfg.velocity_window_seconds,
    )

    tracker = ReferralTracker(uow_factory, fraud_service, referral_settings, event_dispatcher=dispatcher)
    reconciler = WebhookReconciler(
        uow_factory, gateways, referral_tracker=tracker, event_dispatcher=dispatcher
    )
    orchestrator = PaymentOrchestrator(
        uow_factory,
        gateways,
        currency_converter=converter,
        reconciler=reconciler,
        event_dispatcher=dispatcher,
        retry_policy=payment_settings.retry,
    )
    logger.info(
        "services_initialized",
        providers=sorted(gateways),
        velocity_backend="redis" if cache is not None else "memory",
        ip_reputation=reputation is not None,
    )
    return ServiceContainer(
        orchestrator=orchestrator,
        referral_tracker=tracker,
        event_dispatcher=dispatcher,
        gateways=gateways,
        closables=closables,
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_payment_orchestrator(services: ServiceContainer = Depends(get_services)) -> PaymentOrchestrator:
    return services.orchestrator


def get_referral_tracker(services: ServiceContainer = Depends(get_services)) -> ReferralTracker:
    return services.referral_tracker
