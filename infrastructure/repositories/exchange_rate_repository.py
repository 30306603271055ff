"""汇率缓存仓储实现"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.currency.entity import ExchangeRate
from domain.currency.repository import ExchangeRateRepository
from infrastructure.models.exchange_rate import ExchangeRateModel


class SQLAlchemyExchangeRateRepository(ExchangeRateRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(model: ExchangeRateModel) -> ExchangeRate:
        return ExchangeRate(
            base_currency=model.base_currency,
            quote_currency=model.quote_currency,
            rate=model.rate,
            fetched_at=model.fetched_at,
        )

    async def get_latest(self, base_currency: str, quote_currency: str) -> Optional[ExchangeRate]:
        result = await self.session.execute(
            select(ExchangeRateModel)
            .where(
                ExchangeRateModel.base_currency == base_currency.upper(),
                ExchangeRateModel.quote_currency == quote_currency.upper(),
            )
            .order_by(ExchangeRateModel.fetched_at.desc(), ExchangeRateModel.id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def add(self, rate: ExchangeRate) -> ExchangeRate:
        self.session.add(
            ExchangeRateModel(
                base_currency=rate.base_currency,
                quote_currency=rate.quote_currency,
                rate=rate.rate,
                fetched_at=rate.fetched_at,
            )
        )
        await self.session.flush()
        return rate
