from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from application.services.currency_service import CurrencyConverter
from core.settings import ExchangeRateSettings
from domain.common.exceptions import DomainValidationException
from domain.currency.entity import ExchangeRate, apply_rate, format_major, to_major, to_minor
from domain.payment.exceptions import ExchangeRateNotFoundError
from tests.fakes import FakeRateFetcher


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _converter(store, fetcher, **settings) -> CurrencyConverter:
    return CurrencyConverter(store.uow_factory, fetcher, ExchangeRateSettings(**settings), clock=lambda: NOW)


def _cached(store, rate: str, age: timedelta, base="USD", quote="EUR"):
    store.rates.append(ExchangeRate(base, quote, Decimal(rate), NOW - age))


def test_minor_unit_helpers():
    assert to_major(2999, "USD") == Decimal("29.99")
    assert to_minor(Decimal("29.99"), "usd") == 2999
    assert to_minor(Decimal("1500"), "JPY") == 1500
    assert format_major(123456, "BTC") == "0.00123456"
    assert format_major(500, "JPY") == "500"
    assert format_major(100000, "RUB") == "1000.00"


def test_apply_rate_rounds_half_up():
    # 10.01 USD * 0.5 = 5.005 EUR -> 5.01
    assert apply_rate(1001, "USD", "EUR", Decimal("0.5")) == 501
    # 10.00 USD -> JPY has no minor unit
    assert apply_rate(1000, "USD", "JPY", Decimal("151.237")) == 1512


def test_exchange_rate_must_be_positive():
    with pytest.raises(DomainValidationException):
        ExchangeRate("USD", "EUR", Decimal("0"), NOW)


@pytest.mark.asyncio
async def test_same_currency_is_identity(store):
    fetcher = FakeRateFetcher()

    conversion = await _converter(store, fetcher).convert(2999, "usd", "USD")

    assert conversion.amount == 2999
    assert conversion.rate == Decimal(1)
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_fresh_cached_rate_is_used(store):
    _cached(store, "0.92", timedelta(hours=23))
    fetcher = FakeRateFetcher({("USD", "EUR"): Decimal("0.95")})

    conversion = await _converter(store, fetcher).convert(10000, "USD", "EUR")

    assert conversion.amount == 9200
    assert conversion.currency == "EUR"
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_expired_cache_is_refreshed_and_stored(store):
    _cached(store, "0.92", timedelta(hours=25))
    fetcher = FakeRateFetcher({("USD", "EUR"): Decimal("0.95")})

    conversion = await _converter(store, fetcher).convert(10000, "USD", "EUR")

    assert conversion.amount == 9500
    assert fetcher.calls == [("USD", "EUR")]
    newest = max(store.rates, key=lambda r: r.fetched_at)
    assert newest.rate == Decimal("0.95")
    assert newest.fetched_at == NOW


@pytest.mark.asyncio
async def test_stale_rate_is_used_when_source_is_down(store):
    _cached(store, "0.92", timedelta(hours=48))

    conversion = await _converter(store, FakeRateFetcher(fail=True)).convert(10000, "USD", "EUR")

    assert conversion.amount == 9200


@pytest.mark.asyncio
async def test_too_old_rate_is_not_used(store):
    _cached(store, "0.92", timedelta(hours=73))

    with pytest.raises(ExchangeRateNotFoundError):
        await _converter(store, FakeRateFetcher(fail=True)).convert(10000, "USD", "EUR")


@pytest.mark.asyncio
async def test_no_rate_at_all_never_assumes_parity(store):
    with pytest.raises(ExchangeRateNotFoundError) as exc_info:
        await _converter(store, FakeRateFetcher()).convert(10000, "USD", "GBP")
    assert exc_info.value.details == {"from": "USD", "to": "GBP"}


@pytest.mark.asyncio
async def test_fallback_window_is_configurable(store):
    _cached(store, "0.92", timedelta(hours=30))
    converter = _converter(store, FakeRateFetcher(fail=True), max_age_hours=1, stale_fallback_hours=12)

    with pytest.raises(ExchangeRateNotFoundError):
        await converter.convert(100, "USD", "EUR")


@pytest.mark.asyncio
async def test_negative_amount_is_rejected(store):
    with pytest.raises(DomainValidationException):
        await _converter(store, FakeRateFetcher()).convert(-1, "USD", "EUR")


@pytest.mark.asyncio
async def test_fetched_rate_converts_usd_to_eur(store):
    fetcher = FakeRateFetcher({("USD", "EUR"): Decimal("0.85")})

    conversion = await _converter(store, fetcher).convert(100, "USD", "EUR")

    assert conversion.amount == 85
    assert conversion.currency == "EUR"
    assert conversion.rate == Decimal("0.85")
    assert fetcher.calls == [("USD", "EUR")]
    assert [r.rate for r in store.rates] == [Decimal("0.85")]


@pytest.mark.asyncio
async def test_unreachable_source_without_cache_fails(store):
    fetcher = FakeRateFetcher(fail=True)

    with pytest.raises(ExchangeRateNotFoundError) as exc_info:
        await _converter(store, fetcher).convert(100, "USD", "EUR")

    assert exc_info.value.details == {"from": "USD", "to": "EUR"}
    assert fetcher.calls == [("USD", "EUR")]
    assert store.rates == []
