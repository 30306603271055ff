"""
推荐仓储实现

计数器全部使用 col = col + n；追踪记录认领为单条条件 UPDATE，
rowcount 为 1 的一方获得归因。
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.referral.entity import (
    ReferralLink,
    ReferralStats,
    ReferralTrackingRecord,
    RewardType,
)
from domain.referral.exceptions import ReferralCodeConflictException
from domain.referral.repository import (
    ReferralLinkRepository,
    ReferralStatsRepository,
    ReferralTrackingRepository,
)
from infrastructure.models.referral import (
    ReferralLinkModel,
    ReferralStatsModel,
    ReferralTrackingModel,
)


logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLAlchemyReferralLinkRepository(ReferralLinkRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(model: ReferralLinkModel) -> ReferralLink:
        return ReferralLink(
            id=model.id,
            referrer_id=model.referrer_id,
            referral_code=model.referral_code,
            reward_type=RewardType(model.reward_type),
            reward_value=Decimal(str(model.reward_value)),
            product_id=model.product_id,
            shop_id=model.shop_id,
            is_active=bool(model.is_active),
            expires_at=model.expires_at,
            created_at=model.created_at,
        )

    async def add(self, link: ReferralLink) -> ReferralLink:
        model = ReferralLinkModel(
            id=link.id,
            referrer_id=link.referrer_id,
            referral_code=link.referral_code,
            product_id=link.product_id,
            shop_id=link.shop_id,
            reward_type=link.reward_type.value,
            reward_value=link.reward_value,
            is_active=link.is_active,
            expires_at=link.expires_at,
            created_at=link.created_at or _utcnow(),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(model)
                await self.session.flush()
        except IntegrityError:
            logger.warning("referral_code_conflict", referral_code=link.referral_code)
            raise ReferralCodeConflictException(link.referral_code)
        return self._to_entity(model)

    async def get_by_id(self, link_id: str) -> Optional[ReferralLink]:
        model = await self.session.get(ReferralLinkModel, link_id)
        return self._to_entity(model) if model else None

    async def get_by_code(self, referral_code: str) -> Optional[ReferralLink]:
        result = await self.session.execute(
            select(ReferralLinkModel).where(ReferralLinkModel.referral_code == referral_code)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None


class SQLAlchemyReferralStatsRepository(ReferralStatsRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(model: ReferralStatsModel) -> ReferralStats:
        return ReferralStats(
            referral_link_id=model.referral_link_id,
            click_count=int(model.click_count or 0),
            purchase_count=int(model.purchase_count or 0),
            total_earned=int(model.total_earned or 0),
            updated_at=model.updated_at,
        )

    async def create(self, referral_link_id: str) -> ReferralStats:
        model = ReferralStatsModel(
            referral_link_id=referral_link_id,
            click_count=0,
            purchase_count=0,
            total_earned=0,
            updated_at=_utcnow(),
        )
        self.session.add(model)
        await self.session.flush()
        return self._to_entity(model)

    async def get(self, referral_link_id: str) -> Optional[ReferralStats]:
        result = await self.session.execute(
            select(ReferralStatsModel)
            .where(ReferralStatsModel.referral_link_id == referral_link_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def increment_clicks(self, referral_link_id: str, by: int = 1) -> None:
        await self.session.execute(
            update(ReferralStatsModel)
            .where(ReferralStatsModel.referral_link_id == referral_link_id)
            .values(click_count=ReferralStatsModel.click_count + by, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )

    async def record_purchase(self, referral_link_id: str, commission_amount: int) -> None:
        await self.session.execute(
            update(ReferralStatsModel)
            .where(ReferralStatsModel.referral_link_id == referral_link_id)
            .values(
                purchase_count=ReferralStatsModel.purchase_count + 1,
                total_earned=ReferralStatsModel.total_earned + commission_amount,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )


class SQLAlchemyReferralTrackingRepository(ReferralTrackingRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(model: ReferralTrackingModel) -> ReferralTrackingRecord:
        return ReferralTrackingRecord(
            id=model.id,
            referral_link_id=model.referral_link_id,
            referral_code=model.referral_code,
            cookie_value=model.cookie_value,
            expires_at=model.expires_at,
            ip_address=model.ip_address,
            user_agent=model.user_agent,
            referrer_url=model.referrer_url,
            landing_page=model.landing_page,
            country=model.country,
            city=model.city,
            risk_score=int(model.risk_score or 0),
            flagged=bool(model.flagged),
            created_at=model.created_at,
            converted_at=model.converted_at,
            payment_intent_id=model.payment_intent_id,
            commission_amount=model.commission_amount,
        )

    async def add(self, record: ReferralTrackingRecord) -> ReferralTrackingRecord:
        model = ReferralTrackingModel(
            id=record.id,
            referral_link_id=record.referral_link_id,
            referral_code=record.referral_code,
            cookie_value=record.cookie_value,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            referrer_url=record.referrer_url,
            landing_page=record.landing_page,
            country=record.country,
            city=record.city,
            risk_score=record.risk_score,
            flagged=record.flagged,
            created_at=record.created_at or _utcnow(),
            expires_at=record.expires_at,
        )
        self.session.add(model)
        await self.session.flush()
        return self._to_entity(model)

    async def get_by_cookie(self, cookie_value: str) -> Optional[ReferralTrackingRecord]:
        result = await self.session.execute(
            select(ReferralTrackingModel)
            .where(ReferralTrackingModel.cookie_value == cookie_value)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def claim(
        self,
        cookie_value: str,
        *,
        payment_intent_id: str,
        commission_amount: int,
        now: datetime,
    ) -> Optional[ReferralTrackingRecord]:
        result = await self.session.execute(
            update(ReferralTrackingModel)
            .where(
                ReferralTrackingModel.cookie_value == cookie_value,
                ReferralTrackingModel.converted_at.is_(None),
                ReferralTrackingModel.expires_at > now,
            )
            .values(
                converted_at=now,
                payment_intent_id=payment_intent_id,
                commission_amount=commission_amount,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.get_by_cookie(cookie_value)

    async def delete_expired(self, now: datetime) -> int:
        result = await self.session.execute(
            delete(ReferralTrackingModel)
            .where(
                ReferralTrackingModel.converted_at.is_(None),
                ReferralTrackingModel.expires_at <= now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
