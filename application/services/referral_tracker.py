"""
推荐归因应用服务

- 创建推荐链接（推荐码冲突时重试）
- 点击追踪：风控 → 拦截或签发 cookie 并累加点击数
- 购买归因：单条条件更新认领 cookie，保证每个 cookie 至多归因一次
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from application.dtos.referrals import (
    AttributionResult,
    ClickInfo,
    CreateReferralLinkRequest,
    FraudAnalysisDTO,
    ReferralLinkDTO,
    ReferralStatsDTO,
    TrackingResult,
)
from application.services.fraud_service import FraudDetectionService
from core.logging_config import get_logger
from core.settings import ReferralSettings, referral_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.fraud.entity import ClickContext
from domain.referral.entity import ReferralLink, ReferralTrackingRecord, generate_referral_code
from domain.referral.events import ReferralCommissionAccrued
from domain.referral.exceptions import (
    AttributionMiss,
    ReferralCodeConflictException,
    ReferralNotFoundException,
)


logger = get_logger(__name__)


class ReferralTracker:
    """推荐归因服务 - 唯一写入推荐统计与追踪记录的组件"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        fraud_service: FraudDetectionService,
        settings: Optional[ReferralSettings] = None,
        event_dispatcher=None,
    ):
        self._uow_factory = uow_factory
        self._fraud = fraud_service
        self._settings = settings or referral_settings
        self._dispatcher = event_dispatcher

    async def create_referral_link(self, req: CreateReferralLinkRequest) -> ReferralLinkDTO:
        """创建推荐链接及零值统计行；推荐码冲突时换码重试"""
        attempts = self._settings.code_generation_attempts
        for attempt in range(1, attempts + 1):
            link = ReferralLink.issue(
                referrer_id=req.referrer_id,
                referral_code=generate_referral_code(self._settings.code_length),
                reward_type=req.reward_type,
                reward_value=req.reward_value,
                product_id=req.product_id,
                shop_id=req.shop_id,
                expires_at=req.expires_at,
            )
            try:
                async with self._uow_factory() as uow:
                    await uow.referral_link_repository.add(link)
                    await uow.referral_stats_repository.create(link.id)
            except ReferralCodeConflictException:
                logger.warning("referral_code_collision", attempt=attempt)
                continue
            logger.info(
                "referral_link_created",
                referral_link_id=link.id,
                referral_code=link.referral_code,
                referrer_id=link.referrer_id,
            )
            return ReferralLinkDTO.from_entity(link)
        raise ReferralCodeConflictException("<generated>")

    async def get_referral_stats(self, referral_code: str) -> ReferralStatsDTO:
        async with self._uow_factory(readonly=True) as uow:
            link = await uow.referral_link_repository.get_by_code(referral_code)
            if link is None:
                raise ReferralNotFoundException(referral_code)
            stats = await uow.referral_stats_repository.get(link.id)
        return ReferralStatsDTO.from_entity(link, stats)

    async def create_tracking_cookie(self, referral_code: str, click: ClickInfo) -> TrackingResult:
        """
        记录一次推荐点击

        1. 链接不存在/停用/过期 → ReferralNotFoundException
        2. 风控拦截 → 不写记录、不加点击数
        3. 否则同一事务内写追踪记录并原子累加 click_count
        """
        async with self._uow_factory(readonly=True) as uow:
            link = await uow.referral_link_repository.get_by_code(referral_code)
        if link is None or not link.is_usable():
            raise ReferralNotFoundException(referral_code)

        context = ClickContext(
            referral_code=link.referral_code,
            ip_address=click.ip_address,
            user_agent=click.user_agent,
            referrer_url=click.referrer_url,
        )
        analysis = await self._fraud.analyze_click(context)
        analysis_dto = FraudAnalysisDTO.from_result(analysis)

        if analysis.should_block:
            logger.warning(
                "referral_click_blocked",
                referral_code=link.referral_code,
                ip_address=click.ip_address,
                risk_score=analysis.risk_score,
                reason=analysis.block_reason,
            )
            return TrackingResult(
                success=False,
                blocked=True,
                reason=analysis.block_reason,
                fraud_analysis=analysis_dto,
            )

        record = ReferralTrackingRecord.issue(
            link,
            ttl=timedelta(days=self._settings.cookie_ttl_days),
            ip_address=click.ip_address,
            user_agent=click.user_agent,
            referrer_url=click.referrer_url,
            landing_page=click.landing_page,
            country=click.country,
            city=click.city,
            risk_score=analysis.risk_score,
            flagged=analysis.should_flag,
        )
        async with self._uow_factory() as uow:
            await uow.tracking_repository.add(record)
            await uow.referral_stats_repository.increment_clicks(link.id)

        logger.info(
            "referral_click_tracked",
            referral_code=link.referral_code,
            tracking_id=record.id,
            risk_score=analysis.risk_score,
            flagged=record.flagged,
        )
        return TrackingResult(
            success=True,
            tracking_id=record.id,
            cookie_value=record.cookie_value,
            expires_at=record.expires_at,
            fraud_analysis=analysis_dto,
        )

    async def attribute_purchase(
        self,
        cookie_value: str,
        purchase_amount: int,
        currency: str,
        payment_intent_id: str,
    ) -> AttributionResult:
        """
        将一次购买归因到追踪记录

        失败时抛出 AttributionMiss(not_found | expired | already_attributed)，
        调用方记录日志后继续，不影响支付。
        """
        now = datetime.now(timezone.utc)
        async with self._uow_factory() as uow:
            record = await uow.tracking_repository.get_by_cookie(cookie_value)
            if record is None:
                raise AttributionMiss(AttributionMiss.NOT_FOUND, cookie_value=cookie_value)
            link = await uow.referral_link_repository.get_by_id(record.referral_link_id)
            if link is None:
                raise AttributionMiss(AttributionMiss.NOT_FOUND, cookie_value=cookie_value)

            commission = link.commission_for(purchase_amount)
            claimed = await uow.tracking_repository.claim(
                cookie_value,
                payment_intent_id=payment_intent_id,
                commission_amount=commission,
                now=now,
            )
            if claimed is None:
                current = await uow.tracking_repository.get_by_cookie(cookie_value)
                if current is not None and current.is_converted:
                    reason = AttributionMiss.ALREADY_ATTRIBUTED
                elif current is None:
                    reason = AttributionMiss.NOT_FOUND
                else:
                    reason = AttributionMiss.EXPIRED
                raise AttributionMiss(reason, cookie_value=cookie_value)

            await uow.referral_stats_repository.record_purchase(link.id, commission)
            event = ReferralCommissionAccrued(
                referral_link_id=link.id,
                referrer_id=link.referrer_id,
                tracking_id=claimed.id,
                payment_intent_id=payment_intent_id,
                purchase_amount=purchase_amount,
                commission_amount=commission,
                currency=currency,
                held_for_review=claimed.flagged,
            )
            await uow.outbox_repository.add(event)

        if self._dispatcher is not None:
            await self._dispatcher.dispatch([event])

        logger.info(
            "referral_purchase_attributed",
            referral_link_id=link.id,
            tracking_id=claimed.id,
            payment_intent_id=payment_intent_id,
            commission_amount=commission,
            held_for_review=claimed.flagged,
        )
        return AttributionResult(
            tracking_id=claimed.id,
            referral_link_id=link.id,
            commission_amount=commission,
            currency=currency,
            held_for_review=claimed.flagged,
        )

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """删除已过期且未转化的追踪记录"""
        async with self._uow_factory() as uow:
            deleted = await uow.tracking_repository.delete_expired(now or datetime.now(timezone.utc))
        logger.info("referral_tracking_cleaned", deleted=deleted)
        return deleted
