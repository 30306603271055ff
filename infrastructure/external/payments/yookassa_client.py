"""
YooKassa (API v3) adapter over httpx.

- Auth: HTTP Basic ``shop_id:secret_key``.
- Idempotency: ``Idempotence-Key`` header on every POST.
- Amounts are decimal strings with two places (``"29.99"``).
- Notifications carry no signature of their own; authenticity relies on a
  shared-secret HMAC (``X-YooKassa-Signature``) plus the published source IP
  ranges checked by the webhook route. There is no timestamp, so a captured
  body can be replayed; reconciliation is idempotent.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import httpx

from application.dtos.payments import (
    NormalizedEvent,
    ProviderPayment,
    ProviderPaymentRequest,
    ProviderRefund,
    ProviderRefundRequest,
    WebhookEventType,
)
from core.settings import PaymentTimeouts, YooKassaSettings
from domain.currency.entity import format_major, to_minor
from domain.payment.exceptions import ProviderError, SignatureVerificationError
from infrastructure.external.payments.base import BasePaymentClient, header_value


SIGNATURE_HEADER = "X-YooKassa-Signature"

PAYMENT_EVENT_TYPES = {
    "payment.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment.canceled": WebhookEventType.PAYMENT_CANCELED,
    "payment.waiting_for_capture": WebhookEventType.PAYMENT_PENDING,
}
REFUND_EVENT_TYPES = {
    "refund.succeeded": WebhookEventType.REFUND_SUCCEEDED,
}


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class YooKassaClient(BasePaymentClient):
    provider = "yookassa"
    signature_scheme = "shared-secret-hmac"

    def __init__(
        self,
        settings: YooKassaSettings,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeouts=timeouts, currencies=settings.currencies, transport=transport)
        if not (settings.shop_id and settings.secret_key):
            raise RuntimeError("PAYMENT__YOOKASSA__SHOP_ID / SECRET_KEY not configured")
        self._settings = settings
        self._auth = httpx.BasicAuth(settings.shop_id, settings.secret_key)
        self._api_base = settings.api_base.rstrip("/")

    def _error_code(self, body: Optional[dict[str, Any]]) -> Optional[str]:
        return (body or {}).get("code")

    def _error_message(self, body: Optional[dict[str, Any]]) -> Optional[str]:
        return (body or {}).get("description")

    async def create_payment(self, req: ProviderPaymentRequest) -> ProviderPayment:
        payload: dict[str, Any] = {
            "amount": {"value": format_major(req.amount, req.currency), "currency": req.currency},
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": self._settings.return_url},
            "metadata": {**req.metadata, "payment_intent_id": req.reference},
        }
        if req.description:
            # YooKassa limits descriptions to 128 characters
            payload["description"] = req.description[:128]
        data = await self._request(
            "POST",
            f"{self._api_base}/payments",
            operation="create_payment",
            json=payload,
            auth=self._auth,
            headers={"Idempotence-Key": req.idempotency_key},
        )
        external_id = data.get("id")
        if not external_id:
            raise ProviderError(
                "YooKassa response without payment id",
                provider=self.provider,
                provider_code="invalid_response",
            )
        raw_status = str(data.get("status") or "")
        confirmation = data.get("confirmation") or {}
        self._log("payment_provider_created", external_id=external_id, raw_status=raw_status)
        return ProviderPayment(
            external_id=str(external_id),
            status=self._map_status(raw_status, default=self._map_status("pending")),
            redirect_url=confirmation.get("confirmation_url"),
            raw_status=raw_status,
        )

    async def create_refund(self, req: ProviderRefundRequest) -> ProviderRefund:
        if req.amount is None:
            raise ProviderError(
                "YooKassa refunds require an explicit amount",
                provider=self.provider,
                provider_code="amount_required",
            )
        payload: dict[str, Any] = {
            "payment_id": req.external_payment_id,
            "amount": {"value": format_major(req.amount, req.currency), "currency": req.currency},
        }
        if req.reason:
            payload["description"] = req.reason[:250]
        data = await self._request(
            "POST",
            f"{self._api_base}/refunds",
            operation="create_refund",
            json=payload,
            auth=self._auth,
            headers={"Idempotence-Key": req.idempotency_key},
        )
        raw_status = str(data.get("status") or "")
        self._log("refund_provider_created", external_refund_id=data.get("id"), raw_status=raw_status)
        return ProviderRefund(
            external_refund_id=str(data.get("id")),
            status=self._map_refund_status(raw_status),
            raw_status=raw_status,
        )

    def verify_signature(self, headers: Mapping[str, str], body: bytes) -> None:
        secret = self._settings.webhook_secret
        if not secret:
            # fail closed: without a shared secret nothing can be authenticated
            raise SignatureVerificationError("YooKassa webhook secret not configured", provider=self.provider)
        provided = header_value(headers, SIGNATURE_HEADER)
        if not provided:
            raise SignatureVerificationError(f"Missing {SIGNATURE_HEADER} header", provider=self.provider)
        if not hmac.compare_digest(sign_body(secret, body).lower(), provided.strip().lower()):
            raise SignatureVerificationError("YooKassa signature mismatch", provider=self.provider)

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> NormalizedEvent:
        self.verify_signature(headers, body)
        try:
            event = json.loads(body)
            event_type = str(event["event"])
            obj = event["object"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError("Malformed YooKassa notification") from exc

        amount, currency = _parse_amount(obj.get("amount"))

        if event_type in PAYMENT_EVENT_TYPES:
            cancellation = obj.get("cancellation_details") or {}
            return NormalizedEvent(
                provider=self.provider,
                type=PAYMENT_EVENT_TYPES[event_type],
                external_id=obj.get("id"),
                amount=amount,
                currency=currency,
                failure_reason=cancellation.get("reason"),
                raw_type=event_type,
            )
        if event_type in REFUND_EVENT_TYPES:
            return NormalizedEvent(
                provider=self.provider,
                type=REFUND_EVENT_TYPES[event_type],
                external_id=obj.get("payment_id"),
                external_refund_id=obj.get("id"),
                amount=amount,
                currency=currency,
                raw_type=event_type,
            )
        return NormalizedEvent.ignored(self.provider, event_type)


def _parse_amount(raw: Any) -> tuple[Optional[int], Optional[str]]:
    if not isinstance(raw, dict):
        return None, None
    currency = (raw.get("currency") or "").upper() or None
    try:
        value = Decimal(str(raw.get("value")))
    except (InvalidOperation, TypeError):
        return None, currency
    if currency is None or not value.is_finite():
        return None, currency
    return to_minor(value, currency), currency
