"""
Base payment client implementing shared concerns: http, error mapping,
logging and status mapping.

Concrete providers subclass and implement provider-specific logic. Retrying
is the orchestrator's job; adapters only classify failures through
``ProviderError.retryable``.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional
from contextlib import asynccontextmanager

import httpx

from core.logging_config import get_logger
from core.settings import PaymentTimeouts
from application.dtos.payments import (
    NormalizedEvent,
    ProviderPayment,
    ProviderPaymentRequest,
    ProviderRefund,
    ProviderRefundRequest,
)
from domain.payment.entity import PaymentStatus, RefundStatus
from domain.payment.exceptions import ProviderError
from shared.codes.payment_codes import (
    PROVIDER_REFUND_STATUS_TO_INTERNAL,
    PROVIDER_STATUS_TO_INTERNAL,
)


logger = get_logger(__name__)

RETRYABLE_HTTP_STATUSES = frozenset({408, 429})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_HTTP_STATUSES or status_code >= 500


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup for plain dicts and Starlette headers."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


class BasePaymentClient:
    provider: str = "base"
    signature_scheme: str = "none"

    def __init__(
        self,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        currencies: Iterable[str] = (),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or PaymentTimeouts()
        self._currencies = frozenset(c.upper() for c in currencies)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg.connect,
            read=self._timeouts_cfg.read,
            write=self._timeouts_cfg.write,
            pool=self._timeouts_cfg.connect,
        )

    def supports_currency(self, currency: str) -> bool:
        return not self._currencies or currency.upper() in self._currencies

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        # Keep open for reuse; explicit aclose() will close.
        yield self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _request(self, method: str, url: str, *, operation: str, **kwargs: Any) -> dict[str, Any]:
        """Send one HTTP request and map transport/HTTP failures to ProviderError."""
        async with self.client() as client:
            try:
                resp = await client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                self._log_failure(operation, "timeout", exc)
                raise ProviderError(
                    f"{self.provider} {operation} timed out",
                    provider=self.provider,
                    retryable=True,
                    provider_code="timeout",
                ) from exc
            except httpx.TransportError as exc:
                self._log_failure(operation, "transport_error", exc)
                raise ProviderError(
                    f"{self.provider} {operation} transport error",
                    provider=self.provider,
                    retryable=True,
                    provider_code="transport_error",
                ) from exc

        if resp.status_code >= 400:
            body = _safe_json(resp)
            code = self._error_code(body) or f"http_{resp.status_code}"
            retryable = is_retryable_status(resp.status_code)
            logger.warning(
                "payment_provider_http_error",
                provider=self.provider,
                operation=operation,
                status_code=resp.status_code,
                provider_code=code,
                retryable=retryable,
            )
            raise ProviderError(
                self._error_message(body) or f"{self.provider} {operation} failed with HTTP {resp.status_code}",
                provider=self.provider,
                retryable=retryable,
                provider_code=code,
                details={"status_code": resp.status_code},
            )

        body = _safe_json(resp)
        if body is None:
            raise ProviderError(
                f"{self.provider} {operation} returned a non-JSON response",
                provider=self.provider,
                retryable=False,
                provider_code="invalid_response",
            )
        return body

    # Override per provider to extract error details from JSON bodies
    def _error_code(self, body: Optional[dict[str, Any]]) -> Optional[str]:
        return None

    def _error_message(self, body: Optional[dict[str, Any]]) -> Optional[str]:
        return None

    async def create_payment(self, req: ProviderPaymentRequest) -> ProviderPayment:
        raise NotImplementedError

    async def create_refund(self, req: ProviderRefundRequest) -> ProviderRefund:
        raise NotImplementedError

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> NormalizedEvent:
        raise NotImplementedError

    # Helpers
    def _map_status(self, provider_status: str, default: PaymentStatus = PaymentStatus.PENDING) -> PaymentStatus:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        value = mapping.get(provider_status)
        return PaymentStatus(value) if value else default

    def _map_refund_status(self, provider_status: str) -> RefundStatus:
        mapping = PROVIDER_REFUND_STATUS_TO_INTERNAL.get(self.provider, {})
        return RefundStatus(mapping.get(provider_status, RefundStatus.PENDING.value))

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )

    def _log_failure(self, operation: str, kind: str, exc: Exception) -> None:
        logger.warning(
            "payment_provider_call_failed",
            provider=self.provider,
            operation=operation,
            kind=kind,
            error=str(exc),
        )


def _safe_json(resp: httpx.Response) -> Optional[dict[str, Any]]:
    try:
        data = resp.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None
