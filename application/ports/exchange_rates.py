"""Exchange rate source port."""
from __future__ import annotations

from decimal import Decimal
from typing import Protocol, runtime_checkable


@runtime_checkable
class ExchangeRateFetcher(Protocol):
    """Fetches the current rate for ``base -> quote``.

    Any exception means the source is unavailable; the caller decides whether
    a cached rate may be used instead.
    """

    async def fetch_rate(self, base_currency: str, quote_currency: str) -> Decimal: ...
