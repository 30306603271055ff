"""汇率源客户端（exchangerate-api 兼容接口）"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from core.settings import ExchangeRateSettings, payment_settings

from .base import APIError, BaseAPIClient


class ExchangeRateApiClient(BaseAPIClient):
    """
    GET {api_base}/latest/{base} -> {"base": "USD", "rates": {"EUR": 0.92, ...}}

    配置了 api_key 时以 Bearer 方式携带。
    """

    def __init__(
        self,
        settings: Optional[ExchangeRateSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        cfg = settings or payment_settings.rates
        headers = {"Authorization": f"Bearer {cfg.api_key}"} if cfg.api_key else None
        super().__init__(
            base_url=cfg.api_base,
            timeout=cfg.timeout,
            max_retries=cfg.max_retries,
            retry_delay=0.5,
            headers=headers,
            transport=transport,
        )

    async def fetch_rate(self, base_currency: str, quote_currency: str) -> Decimal:
        base = base_currency.upper()
        quote = quote_currency.upper()
        response = await self.get(f"latest/{base}")
        data = response.json()
        rates = data.get("rates") if isinstance(data, dict) else None
        if not isinstance(rates, dict) or quote not in rates:
            raise APIError(f"Rate {base}->{quote} missing from response", status_code=response.status_code)
        try:
            rate = Decimal(str(rates[quote]))
        except InvalidOperation as exc:
            raise APIError(f"Invalid rate value for {base}->{quote}") from exc
        if not rate.is_finite() or rate <= 0:
            raise APIError(f"Non-positive rate for {base}->{quote}: {rate}")
        return rate
