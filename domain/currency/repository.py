"""汇率缓存仓储接口"""
from abc import ABC, abstractmethod
from typing import Optional

from .entity import ExchangeRate


class ExchangeRateRepository(ABC):

    @abstractmethod
    async def get_latest(self, base_currency: str, quote_currency: str) -> Optional[ExchangeRate]:
        """获取某币种对最新的一条汇率（不判断新鲜度）"""
        pass

    @abstractmethod
    async def add(self, rate: ExchangeRate) -> ExchangeRate:
        """写入一条新抓取的汇率"""
        pass
