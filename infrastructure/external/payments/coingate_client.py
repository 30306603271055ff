"""
CoinGate (API v2) crypto checkout adapter over httpx.

- Auth: ``Authorization: Token <api_key>``.
- Orders are form-encoded; ``order_id`` is the local payment intent id, which
  CoinGate keeps unique per merchant and so acts as the idempotency key.
- Each order carries ``token = HMAC-SHA256(webhook_secret, order_id)``.
  CoinGate echoes it in the callback, where it is recomputed and compared in
  constant time. Like YooKassa there is no timestamp, so replay is possible.
- CoinGate has no merchant refund API for crypto orders.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

import httpx

from application.dtos.payments import (
    NormalizedEvent,
    ProviderPayment,
    ProviderPaymentRequest,
    ProviderRefund,
    ProviderRefundRequest,
    WebhookEventType,
)
from core.settings import CoinGateSettings, PaymentTimeouts
from domain.currency.entity import format_major, to_minor
from domain.payment.exceptions import ProviderError, SignatureVerificationError
from infrastructure.external.payments.base import BasePaymentClient, header_value


STATUS_EVENT_TYPES = {
    "new": WebhookEventType.PAYMENT_REQUIRES_ACTION,
    "pending": WebhookEventType.PAYMENT_PENDING,
    "confirming": WebhookEventType.PAYMENT_PENDING,
    "paid": WebhookEventType.PAYMENT_SUCCEEDED,
    "invalid": WebhookEventType.PAYMENT_FAILED,
    "expired": WebhookEventType.PAYMENT_CANCELED,
    "canceled": WebhookEventType.PAYMENT_CANCELED,
}


def order_token(secret: str, order_id: str) -> str:
    return hmac.new(secret.encode("utf-8"), order_id.encode("utf-8"), hashlib.sha256).hexdigest()


class CoinGateClient(BasePaymentClient):
    provider = "coingate"
    signature_scheme = "shared-secret-token"

    def __init__(
        self,
        settings: CoinGateSettings,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeouts=timeouts, currencies=settings.currencies, transport=transport)
        if not settings.api_key:
            raise RuntimeError("PAYMENT__COINGATE__API_KEY not configured")
        self._settings = settings
        self._api_base = settings.api_base.rstrip("/")
        self._headers = {"Authorization": f"Token {settings.api_key}"}

    def _error_code(self, body: Optional[dict[str, Any]]) -> Optional[str]:
        return (body or {}).get("reason")

    def _error_message(self, body: Optional[dict[str, Any]]) -> Optional[str]:
        return (body or {}).get("message")

    async def create_payment(self, req: ProviderPaymentRequest) -> ProviderPayment:
        if not self._settings.webhook_secret:
            raise ProviderError(
                "CoinGate webhook secret not configured",
                provider=self.provider,
                provider_code="webhook_secret_missing",
            )
        form = {
            "order_id": req.reference,
            "price_amount": format_major(req.amount, req.currency),
            "price_currency": req.currency,
            "receive_currency": self._settings.receive_currency,
            "title": (req.description or f"Order {req.reference}")[:150],
            "callback_url": self._settings.callback_url,
            "success_url": self._settings.success_url,
            "cancel_url": self._settings.cancel_url,
            "token": order_token(self._settings.webhook_secret, req.reference),
        }
        data = await self._request(
            "POST",
            f"{self._api_base}/orders",
            operation="create_payment",
            data=form,
            headers=self._headers,
        )
        external_id = data.get("id")
        if external_id is None:
            raise ProviderError(
                "CoinGate response without order id",
                provider=self.provider,
                provider_code="invalid_response",
            )
        raw_status = str(data.get("status") or "new")
        self._log("payment_provider_created", external_id=external_id, raw_status=raw_status)
        return ProviderPayment(
            external_id=str(external_id),
            status=self._map_status(raw_status, default=self._map_status("new")),
            redirect_url=data.get("payment_url"),
            raw_status=raw_status,
        )

    async def create_refund(self, req: ProviderRefundRequest) -> ProviderRefund:
        raise ProviderError(
            "CoinGate does not support merchant refunds for crypto orders",
            provider=self.provider,
            retryable=False,
            provider_code="refund_not_supported",
        )

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> NormalizedEvent:
        secret = self._settings.webhook_secret
        if not secret:
            raise SignatureVerificationError("CoinGate webhook secret not configured", provider=self.provider)
        fields = _decode_callback(headers, body)
        order_id = fields.get("order_id")
        token = fields.get("token")
        if not order_id or not token:
            raise SignatureVerificationError("CoinGate callback without order_id/token", provider=self.provider)
        if not hmac.compare_digest(order_token(secret, str(order_id)), str(token)):
            raise SignatureVerificationError("CoinGate token mismatch", provider=self.provider)

        raw_status = str(fields.get("status") or "")
        event_type = STATUS_EVENT_TYPES.get(raw_status)
        if event_type is None:
            # includes "refunded": refunds are handled outside CoinGate
            return NormalizedEvent.ignored(self.provider, raw_status)

        currency = (fields.get("price_currency") or "").upper() or None
        amount = None
        if currency and fields.get("price_amount"):
            try:
                amount = to_minor(Decimal(str(fields["price_amount"])), currency)
            except InvalidOperation:
                amount = None
        return NormalizedEvent(
            provider=self.provider,
            type=event_type,
            external_id=str(fields.get("id")) if fields.get("id") is not None else None,
            amount=amount,
            currency=currency,
            failure_reason=raw_status if event_type is WebhookEventType.PAYMENT_FAILED else None,
            raw_type=raw_status,
        )


def _decode_callback(headers: Mapping[str, str], body: bytes) -> dict[str, Any]:
    """CoinGate posts form-encoded callbacks; JSON is accepted as well."""
    content_type = (header_value(headers, "Content-Type") or "").lower()
    text = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else str(body)
    if "json" in content_type or text.lstrip().startswith("{"):
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise ValueError("Malformed CoinGate callback") from exc
        if not isinstance(data, dict):
            raise ValueError("Malformed CoinGate callback")
        return data
    return dict(parse_qsl(text, keep_blank_values=True))
