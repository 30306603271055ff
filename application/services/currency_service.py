"""
Currency conversion backed by the cached exchange rate table.

Lookup order for ``base -> quote``:
1. newest cached rate younger than ``max_age`` (default 24h);
2. a freshly fetched rate, which is stored;
3. if the fetch fails, a cached rate younger than ``stale_fallback`` (72h),
   with a warning;
4. otherwise ``ExchangeRateNotFoundError``. A rate of 1 is never assumed.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from application.ports.exchange_rates import ExchangeRateFetcher
from core.logging_config import get_logger
from core.settings import ExchangeRateSettings, payment_settings
from domain.common.exceptions import DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.currency.entity import Conversion, ExchangeRate, apply_rate
from domain.payment.exceptions import ExchangeRateNotFoundError


logger = get_logger(__name__)


class CurrencyConverter:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        fetcher: ExchangeRateFetcher,
        settings: Optional[ExchangeRateSettings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        cfg = settings or payment_settings.rates
        self._uow_factory = uow_factory
        self._fetcher = fetcher
        self._max_age = timedelta(hours=cfg.max_age_hours)
        self._stale_fallback = timedelta(hours=cfg.stale_fallback_hours)
        self._clock = clock

    async def convert(self, amount: int, from_currency: str, to_currency: str) -> Conversion:
        if amount < 0:
            raise DomainValidationException(f"Amount must not be negative: {amount}", field="amount")
        base = from_currency.upper()
        quote = to_currency.upper()
        if base == quote:
            return Conversion(amount=amount, currency=quote, rate=Decimal(1))

        rate = await self.get_rate(base, quote)
        converted = apply_rate(amount, base, quote, rate)
        logger.info(
            "currency_converted",
            from_currency=base,
            to_currency=quote,
            amount=amount,
            converted=converted,
            rate=str(rate),
        )
        return Conversion(amount=converted, currency=quote, rate=rate)

    async def get_rate(self, base: str, quote: str) -> Decimal:
        now = self._clock()
        async with self._uow_factory(readonly=True) as uow:
            cached = await uow.exchange_rate_repository.get_latest(base, quote)
        if cached is not None and cached.is_fresh(self._max_age, now):
            return cached.rate

        try:
            fetched = await self._fetcher.fetch_rate(base, quote)
        except Exception as exc:
            # any fetch failure counts as "source unavailable"
            if cached is not None and cached.is_fresh(self._stale_fallback, now):
                logger.warning(
                    "exchange_rate_stale_fallback",
                    base=base,
                    quote=quote,
                    age_seconds=int(cached.age(now).total_seconds()),
                    error=str(exc),
                )
                return cached.rate
            logger.error("exchange_rate_unavailable", base=base, quote=quote, error=str(exc))
            raise ExchangeRateNotFoundError(base, quote) from exc

        rate = ExchangeRate(base_currency=base, quote_currency=quote, rate=fetched, fetched_at=now)
        async with self._uow_factory() as uow:
            await uow.exchange_rate_repository.add(rate)
        logger.info("exchange_rate_refreshed", base=base, quote=quote, rate=str(rate.rate))
        return rate.rate
