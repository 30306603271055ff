"""
支付仓储实现 - 使用SQLAlchemy实现数据访问

状态/金额变更均为单条条件 UPDATE，通过 rowcount 判断是否生效，
并发请求之间不需要应用层加锁。
"""
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.payment.entity import (
    PaymentIntent,
    PaymentStatus,
    REFUNDABLE_STATUSES,
    Refund,
    RefundStatus,
)
from domain.payment.exceptions import PaymentAlreadyExistsException
from domain.payment.repository import PaymentIntentRepository, RefundRepository
from infrastructure.models.payment import PaymentIntentModel, RefundModel


logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLAlchemyPaymentIntentRepository(PaymentIntentRepository):
    """支付意图仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentIntentModel) -> PaymentIntent:
        """将数据库模型转换为领域实体"""
        return PaymentIntent(
            id=model.id,
            amount=int(model.amount),
            currency=model.currency,
            provider=model.provider,
            status=PaymentStatus(model.status),
            provider_payment_id=model.provider_payment_id,
            idempotency_key=model.idempotency_key,
            refunded_amount=int(model.refunded_amount or 0),
            client_secret=model.client_secret,
            redirect_url=model.redirect_url,
            failure_reason=model.failure_reason,
            metadata=dict(model.extra_metadata or {}),
            created_at=model.created_at,
            updated_at=model.updated_at,
            succeeded_at=model.succeeded_at,
        )

    def _to_model(self, entity: PaymentIntent) -> PaymentIntentModel:
        """将领域实体转换为数据库模型"""
        return PaymentIntentModel(
            id=entity.id,
            provider=entity.provider.value,
            provider_payment_id=entity.provider_payment_id,
            idempotency_key=entity.idempotency_key,
            amount=entity.amount,
            currency=entity.currency,
            refunded_amount=entity.refunded_amount,
            status=entity.status.value,
            client_secret=entity.client_secret,
            redirect_url=entity.redirect_url,
            failure_reason=entity.failure_reason,
            extra_metadata=entity.metadata,
            created_at=entity.created_at or _utcnow(),
            updated_at=entity.updated_at or _utcnow(),
            succeeded_at=entity.succeeded_at,
        )

    async def add(self, intent: PaymentIntent) -> PaymentIntent:
        """创建支付意图"""
        db_intent = self._to_model(intent)
        try:
            # SAVEPOINT：唯一键冲突只回滚本次插入，不影响外层事务
            async with self.session.begin_nested():
                self.session.add(db_intent)
                await self.session.flush()
        except IntegrityError as e:
            msg = str(e.orig).lower()
            if "idempotency_key" in msg or "unique" in msg or "duplicate" in msg:
                logger.warning(
                    "payment_intent_create_conflict",
                    idempotency_key=intent.idempotency_key,
                    provider=intent.provider.value,
                )
                raise PaymentAlreadyExistsException(intent.idempotency_key or intent.id)
            raise
        logger.info(
            "payment_intent_created",
            payment_intent_id=db_intent.id,
            provider=db_intent.provider,
            provider_payment_id=db_intent.provider_payment_id,
            status=db_intent.status,
        )
        return self._to_entity(db_intent)

    async def _get_where(self, *criteria) -> Optional[PaymentIntent]:
        result = await self.session.execute(
            select(PaymentIntentModel).where(*criteria).execution_options(populate_existing=True)
        )
        db_intent = result.scalar_one_or_none()
        return self._to_entity(db_intent) if db_intent else None

    async def get_by_id(self, intent_id: str) -> Optional[PaymentIntent]:
        """根据ID获取支付意图"""
        return await self._get_where(PaymentIntentModel.id == intent_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PaymentIntent]:
        return await self._get_where(PaymentIntentModel.idempotency_key == idempotency_key)

    async def get_by_provider_payment_id(self, provider: str, provider_payment_id: str) -> Optional[PaymentIntent]:
        return await self._get_where(
            PaymentIntentModel.provider == provider,
            PaymentIntentModel.provider_payment_id == provider_payment_id,
        )

    async def compare_and_set_status(
        self,
        intent_id: str,
        expected: PaymentStatus,
        new_status: PaymentStatus,
        *,
        failure_reason: Optional[str] = None,
        succeeded_at: Optional[datetime] = None,
    ) -> bool:
        values = {"status": PaymentStatus(new_status).value, "updated_at": _utcnow()}
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        if succeeded_at is not None:
            values["succeeded_at"] = succeeded_at
        result = await self.session.execute(
            update(PaymentIntentModel)
            .where(
                PaymentIntentModel.id == intent_id,
                PaymentIntentModel.status == PaymentStatus(expected).value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reserve_refund(self, intent_id: str, amount: int) -> Optional[PaymentIntent]:
        new_refunded = PaymentIntentModel.refunded_amount + amount
        result = await self.session.execute(
            update(PaymentIntentModel)
            .where(
                PaymentIntentModel.id == intent_id,
                PaymentIntentModel.status.in_([s.value for s in REFUNDABLE_STATUSES]),
                new_refunded <= PaymentIntentModel.amount,
            )
            .values(
                refunded_amount=new_refunded,
                status=case(
                    (new_refunded >= PaymentIntentModel.amount, PaymentStatus.REFUNDED.value),
                    else_=PaymentStatus.PARTIALLY_REFUNDED.value,
                ),
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.get_by_id(intent_id)

    async def release_refund(self, intent_id: str, amount: int) -> Optional[PaymentIntent]:
        new_refunded = PaymentIntentModel.refunded_amount - amount
        result = await self.session.execute(
            update(PaymentIntentModel)
            .where(
                PaymentIntentModel.id == intent_id,
                PaymentIntentModel.refunded_amount >= amount,
                PaymentIntentModel.status.in_(
                    [PaymentStatus.PARTIALLY_REFUNDED.value, PaymentStatus.REFUNDED.value]
                ),
            )
            .values(
                refunded_amount=new_refunded,
                status=case(
                    (new_refunded <= 0, PaymentStatus.SUCCEEDED.value),
                    else_=PaymentStatus.PARTIALLY_REFUNDED.value,
                ),
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("refund_release_skipped", payment_intent_id=intent_id, amount=amount)
            return None
        return await self.get_by_id(intent_id)


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        return Refund(
            id=model.id,
            payment_intent_id=model.payment_intent_id,
            provider=model.provider,
            amount=int(model.amount),
            currency=model.currency,
            status=RefundStatus(model.status),
            provider_refund_id=model.provider_refund_id,
            reason=model.reason,
            failure_reason=model.failure_reason,
            metadata=dict(model.extra_metadata or {}),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Refund) -> RefundModel:
        return RefundModel(
            id=entity.id,
            payment_intent_id=entity.payment_intent_id,
            provider=entity.provider.value,
            provider_refund_id=entity.provider_refund_id,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            reason=entity.reason,
            failure_reason=entity.failure_reason,
            extra_metadata=entity.metadata,
            created_at=entity.created_at or _utcnow(),
            updated_at=entity.updated_at or _utcnow(),
        )

    async def add(self, refund: Refund) -> Refund:
        db_refund = self._to_model(refund)
        self.session.add(db_refund)
        await self.session.flush()
        logger.info(
            "refund_created",
            refund_id=db_refund.id,
            payment_intent_id=db_refund.payment_intent_id,
            amount=db_refund.amount,
        )
        return self._to_entity(db_refund)

    async def _get_where(self, *criteria) -> Optional[Refund]:
        result = await self.session.execute(
            select(RefundModel).where(*criteria).execution_options(populate_existing=True)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        return await self._get_where(RefundModel.id == refund_id)

    async def get_by_provider_refund_id(self, provider: str, provider_refund_id: str) -> Optional[Refund]:
        return await self._get_where(
            RefundModel.provider == provider,
            RefundModel.provider_refund_id == provider_refund_id,
        )

    async def list_by_payment(self, payment_intent_id: str) -> List[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.payment_intent_id == payment_intent_id)
            .order_by(RefundModel.created_at.asc())
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def attach_provider_refund(self, refund_id: str, provider_refund_id: str) -> None:
        await self.session.execute(
            update(RefundModel)
            .where(RefundModel.id == refund_id)
            .values(provider_refund_id=provider_refund_id, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )

    async def compare_and_set_status(
        self,
        refund_id: str,
        expected: Iterable[RefundStatus],
        new_status: RefundStatus,
        *,
        failure_reason: Optional[str] = None,
    ) -> bool:
        values = {"status": RefundStatus(new_status).value, "updated_at": _utcnow()}
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        result = await self.session.execute(
            update(RefundModel)
            .where(
                RefundModel.id == refund_id,
                RefundModel.status.in_([RefundStatus(s).value for s in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
