"""
汇率与币种精度

金额在系统内部均为最小货币单位整数，换算时先按源币种精度转为十进制，
乘以汇率后再按目标币种精度四舍五入（ROUND_HALF_UP）。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from domain.common.exceptions import DomainValidationException


# Currencies whose minor unit differs from 2 decimal places
CURRENCY_EXPONENTS: dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "BTC": 8,
    "ETH": 8,
    "LTC": 8,
}
DEFAULT_EXPONENT = 2


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)


def to_major(amount: int, currency: str) -> Decimal:
    """最小单位整数 -> 十进制金额（如 2999 USD -> 29.99）"""
    return Decimal(amount).scaleb(-currency_exponent(currency))


def to_minor(value: Decimal, currency: str) -> int:
    """十进制金额 -> 最小单位整数，四舍五入"""
    scaled = Decimal(value).scaleb(currency_exponent(currency))
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_major(amount: int, currency: str) -> str:
    """格式化为固定小数位字符串（如 "29.99"）"""
    exponent = currency_exponent(currency)
    quant = Decimal(1).scaleb(-exponent)
    return str(to_major(amount, currency).quantize(quant, rounding=ROUND_HALF_UP))


@dataclass
class ExchangeRate:
    """缓存的汇率记录"""

    base_currency: str
    quote_currency: str
    rate: Decimal
    fetched_at: datetime

    def __post_init__(self):
        self.base_currency = self.base_currency.upper()
        self.quote_currency = self.quote_currency.upper()
        self.rate = Decimal(str(self.rate))
        if self.rate <= 0:
            raise DomainValidationException(f"Exchange rate must be positive: {self.rate}", field="rate")
        if self.fetched_at.tzinfo is None:
            self.fetched_at = self.fetched_at.replace(tzinfo=timezone.utc)

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or datetime.now(timezone.utc)) - self.fetched_at

    def is_fresh(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        return self.age(now) <= max_age


@dataclass(frozen=True)
class Conversion:
    amount: int
    currency: str
    rate: Decimal


def apply_rate(amount: int, from_currency: str, to_currency: str, rate: Decimal) -> int:
    return to_minor(to_major(amount, from_currency) * Decimal(rate), to_currency)
