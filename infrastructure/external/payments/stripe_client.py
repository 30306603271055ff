"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- One ``stripe.StripeClient`` per adapter, so no global key is configured.
  Its HTTP client carries the connect/read timeouts and SDK-level retries
  are off (the orchestrator owns the retry policy).
- The SDK is synchronous; calls run in a worker thread under
  ``anyio.fail_after``. The thread is abandoned on cancel, so the caller
  gets a retryable timeout at the deadline even if the request is still
  in flight.
- Webhook verification uses ``stripe.WebhookSignature.verify_header`` with the
  ``Stripe-Signature`` header (HMAC-SHA256 over ``{t}.{payload}``, timestamp
  checked against the tolerance). The payload is then decoded as plain JSON.
"""
from __future__ import annotations

import json
from functools import partial
from typing import Any, Callable, Mapping, Optional

import anyio
import stripe

from application.dtos.payments import (
    NormalizedEvent,
    ProviderPayment,
    ProviderPaymentRequest,
    ProviderRefund,
    ProviderRefundRequest,
    WebhookEventType,
)
from core.logging_config import get_logger
from core.settings import PaymentTimeouts, StripeSettings
from domain.payment.exceptions import ProviderError, SignatureVerificationError
from infrastructure.external.payments.base import BasePaymentClient, header_value


logger = get_logger(__name__)

PAYMENT_EVENT_TYPES = {
    "payment_intent.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "payment_intent.canceled": WebhookEventType.PAYMENT_CANCELED,
    "payment_intent.requires_action": WebhookEventType.PAYMENT_REQUIRES_ACTION,
    "payment_intent.processing": WebhookEventType.PAYMENT_PENDING,
}
REFUND_EVENT_TYPES = frozenset({
    "refund.created",
    "refund.updated",
    "refund.failed",
    "charge.refund.updated",
})


class StripeClient(BasePaymentClient):
    provider = "stripe"
    signature_scheme = "hmac-sha256-timestamped"

    def __init__(
        self,
        settings: StripeSettings,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        tolerance_seconds: int = 300,
    ):
        super().__init__(timeouts=timeouts, currencies=settings.currencies)
        if not settings.secret_key:
            raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
        self._webhook_secret = settings.webhook_secret
        self._tolerance = tolerance_seconds
        self._sdk = stripe.StripeClient(
            settings.secret_key,
            http_client=stripe.RequestsClient(
                timeout=(self._timeouts_cfg.connect, self._timeouts_cfg.read),
            ),
            max_network_retries=0,
        )
        self._payment_intents = self._sdk.payment_intents
        self._refunds = self._sdk.refunds

    async def _call(
        self,
        operation: str,
        fn: Callable[..., Any],
        params: dict[str, Any],
        idempotency_key: str,
    ) -> Any:
        """Run a blocking SDK call in a thread and map Stripe errors."""
        call = partial(fn, params=params, options={"idempotency_key": idempotency_key})
        try:
            with anyio.fail_after(self._timeouts_cfg.total):
                return await anyio.to_thread.run_sync(call, abandon_on_cancel=True)
        except TimeoutError as exc:
            self._log_failure(operation, "timeout", exc)
            raise ProviderError(
                f"stripe {operation} timed out",
                provider=self.provider,
                retryable=True,
                provider_code="timeout",
            ) from exc
        except stripe.CardError as exc:
            raise self._provider_error(operation, exc, retryable=False) from exc
        except (stripe.RateLimitError, stripe.APIConnectionError) as exc:
            raise self._provider_error(operation, exc, retryable=True) from exc
        except (stripe.InvalidRequestError, stripe.AuthenticationError, stripe.PermissionError) as exc:
            raise self._provider_error(operation, exc, retryable=False) from exc
        except stripe.APIError as exc:
            raise self._provider_error(operation, exc, retryable=True) from exc
        except stripe.StripeError as exc:
            status = getattr(exc, "http_status", None) or 0
            raise self._provider_error(operation, exc, retryable=status >= 500) from exc

    def _provider_error(self, operation: str, exc: Any, *, retryable: bool) -> ProviderError:
        code = getattr(exc, "code", None) or type(exc).__name__
        logger.warning(
            "payment_provider_call_failed",
            provider=self.provider,
            operation=operation,
            provider_code=code,
            http_status=getattr(exc, "http_status", None),
            retryable=retryable,
        )
        return ProviderError(
            getattr(exc, "user_message", None) or str(exc) or f"stripe {operation} failed",
            provider=self.provider,
            retryable=retryable,
            provider_code=str(code),
            details={"request_id": getattr(exc, "request_id", None)},
        )

    async def create_payment(self, req: ProviderPaymentRequest) -> ProviderPayment:
        metadata = dict(req.metadata)
        metadata.setdefault("payment_intent_id", req.reference)
        params: dict[str, Any] = {
            "amount": req.amount,
            "currency": req.currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if req.description:
            params["description"] = req.description
        pi = await self._call(
            "create_payment", self._payment_intents.create, params, req.idempotency_key
        )
        raw_status = str(pi.status)
        self._log("payment_provider_created", external_id=pi.id, raw_status=raw_status)
        return ProviderPayment(
            external_id=str(pi.id),
            status=self._map_status(raw_status),
            client_secret=getattr(pi, "client_secret", None),
            raw_status=raw_status,
        )

    async def create_refund(self, req: ProviderRefundRequest) -> ProviderRefund:
        params: dict[str, Any] = {
            "payment_intent": req.external_payment_id,
            "metadata": {**req.metadata, "reason": req.reason or ""},
        }
        if req.amount is not None:
            params["amount"] = req.amount
        refund = await self._call("create_refund", self._refunds.create, params, req.idempotency_key)
        raw_status = str(getattr(refund, "status", "") or "")
        self._log("refund_provider_created", external_refund_id=refund.id, raw_status=raw_status)
        return ProviderRefund(
            external_refund_id=str(refund.id),
            status=self._map_refund_status(raw_status),
            raw_status=raw_status,
        )

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> NormalizedEvent:
        if not self._webhook_secret:
            raise SignatureVerificationError("Stripe webhook secret not configured", provider=self.provider)
        sig = header_value(headers, "Stripe-Signature")
        if not sig:
            raise SignatureVerificationError("Missing Stripe-Signature header", provider=self.provider)
        payload = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else str(body)
        try:
            stripe.WebhookSignature.verify_header(payload, sig, self._webhook_secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationError(str(exc), provider=self.provider) from exc

        try:
            event = json.loads(payload)
            event_type = str(event["type"])
            obj = event["data"]["object"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError("Malformed Stripe event payload") from exc
        event_id = event.get("id")

        if event_type in PAYMENT_EVENT_TYPES:
            last_error = obj.get("last_payment_error") or {}
            amount = obj.get("amount_received") or obj.get("amount")
            return NormalizedEvent(
                provider=self.provider,
                type=PAYMENT_EVENT_TYPES[event_type],
                event_id=event_id,
                external_id=obj.get("id"),
                amount=amount,
                currency=(obj.get("currency") or "").upper() or None,
                failure_reason=last_error.get("message") or obj.get("cancellation_reason"),
                raw_type=event_type,
            )

        if event_type in REFUND_EVENT_TYPES:
            status = self._map_refund_status(str(obj.get("status") or ""))
            if event_type == "refund.failed":
                status = self._map_refund_status("failed")
            if status.value == "pending":
                return NormalizedEvent.ignored(self.provider, event_type, event_id)
            return NormalizedEvent(
                provider=self.provider,
                type=(
                    WebhookEventType.REFUND_SUCCEEDED
                    if status.value == "succeeded"
                    else WebhookEventType.REFUND_FAILED
                ),
                event_id=event_id,
                external_id=obj.get("payment_intent"),
                external_refund_id=obj.get("id"),
                amount=obj.get("amount"),
                currency=(obj.get("currency") or "").upper() or None,
                failure_reason=obj.get("failure_reason"),
                raw_type=event_type,
            )

        return NormalizedEvent.ignored(self.provider, event_type, event_id)
