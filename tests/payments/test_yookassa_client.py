import base64
import json

import httpx
import pytest

from application.dtos.payments import ProviderPaymentRequest, ProviderRefundRequest, WebhookEventType
from core.settings import YooKassaSettings
from domain.payment.entity import PaymentStatus, RefundStatus
from domain.payment.exceptions import ProviderError, SignatureVerificationError
from infrastructure.external.payments.yookassa_client import SIGNATURE_HEADER, YooKassaClient, sign_body


SECRET = "yk-webhook-secret"


def _client(handler=None, **overrides) -> YooKassaClient:
    cfg = {"shop_id": "shop-1", "secret_key": "live_secret", "webhook_secret": SECRET}
    cfg.update(overrides)
    transport = httpx.MockTransport(handler) if handler else None
    return YooKassaClient(YooKassaSettings(**cfg), transport=transport)


def _notification(event: str, obj: dict) -> bytes:
    return json.dumps({"type": "notification", "event": event, "object": obj}).encode("utf-8")


@pytest.mark.asyncio
async def test_create_payment_request_shape():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(
            200,
            json={
                "id": "2c5f-yk",
                "status": "pending",
                "confirmation": {"type": "redirect", "confirmation_url": "https://yoomoney.ru/checkout/2c5f"},
            },
        )

    client = _client(handler)
    created = await client.create_payment(
        ProviderPaymentRequest(
            reference="intent-1", amount=2999, currency="RUB", idempotency_key="key-1", description="Order 1"
        )
    )
    await client.aclose()

    request = seen["request"]
    body = json.loads(request.content)
    assert request.url.path.endswith("/payments")
    assert request.headers["Idempotence-Key"] == "key-1"
    expected_auth = base64.b64encode(b"shop-1:live_secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected_auth}"
    assert body["amount"] == {"value": "29.99", "currency": "RUB"}
    assert body["metadata"]["payment_intent_id"] == "intent-1"
    assert body["capture"] is True

    assert created.external_id == "2c5f-yk"
    assert created.status == PaymentStatus.REQUIRES_ACTION
    assert created.redirect_url == "https://yoomoney.ru/checkout/2c5f"


@pytest.mark.asyncio
async def test_server_error_is_retryable():
    client = _client(lambda request: httpx.Response(503, json={"code": "internal_server_error"}))

    with pytest.raises(ProviderError) as exc_info:
        await client.create_payment(
            ProviderPaymentRequest(reference="intent-1", amount=100, currency="RUB", idempotency_key="key-1")
        )
    assert exc_info.value.retryable is True
    assert exc_info.value.provider_code == "internal_server_error"


@pytest.mark.asyncio
async def test_client_error_is_not_retryable():
    client = _client(
        lambda request: httpx.Response(400, json={"code": "invalid_request", "description": "Amount too small"})
    )

    with pytest.raises(ProviderError) as exc_info:
        await client.create_payment(
            ProviderPaymentRequest(reference="intent-1", amount=1, currency="RUB", idempotency_key="key-1")
        )
    assert exc_info.value.retryable is False
    assert exc_info.value.message == "Amount too small"


@pytest.mark.asyncio
async def test_timeout_is_retryable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError) as exc_info:
        await _client(handler).create_payment(
            ProviderPaymentRequest(reference="intent-1", amount=100, currency="RUB", idempotency_key="key-1")
        )
    assert exc_info.value.retryable is True
    assert exc_info.value.provider_code == "timeout"


@pytest.mark.asyncio
async def test_refund_requires_amount_and_sends_it():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["key"] = request.headers["Idempotence-Key"]
        return httpx.Response(200, json={"id": "rf-1", "status": "succeeded"})

    client = _client(handler)
    with pytest.raises(ProviderError) as exc_info:
        await client.create_refund(
            ProviderRefundRequest(external_payment_id="2c5f-yk", currency="RUB", idempotency_key="refund:1")
        )
    assert exc_info.value.provider_code == "amount_required"

    refund = await client.create_refund(
        ProviderRefundRequest(external_payment_id="2c5f-yk", currency="RUB", idempotency_key="refund:1", amount=1050)
    )
    assert seen["body"] == {"payment_id": "2c5f-yk", "amount": {"value": "10.50", "currency": "RUB"}}
    assert seen["key"] == "refund:1"
    assert refund.status == RefundStatus.SUCCEEDED


def test_parse_payment_succeeded():
    body = _notification(
        "payment.succeeded",
        {"id": "2c5f-yk", "status": "succeeded", "amount": {"value": "1500.00", "currency": "RUB"}},
    )

    evt = _client().parse_webhook({SIGNATURE_HEADER: sign_body(SECRET, body)}, body)

    assert evt.type == WebhookEventType.PAYMENT_SUCCEEDED
    assert evt.external_id == "2c5f-yk"
    assert evt.amount == 150000
    assert evt.currency == "RUB"


def test_parse_canceled_and_refund_events():
    canceled = _notification(
        "payment.canceled",
        {"id": "2c5f-yk", "status": "canceled", "cancellation_details": {"reason": "expired_on_confirmation"}},
    )
    refund = _notification(
        "refund.succeeded",
        {"id": "rf-1", "payment_id": "2c5f-yk", "status": "succeeded", "amount": {"value": "10.50", "currency": "RUB"}},
    )
    client = _client()

    evt = client.parse_webhook({SIGNATURE_HEADER: sign_body(SECRET, canceled)}, canceled)
    assert evt.type == WebhookEventType.PAYMENT_CANCELED
    assert evt.failure_reason == "expired_on_confirmation"

    evt = client.parse_webhook({SIGNATURE_HEADER.lower(): sign_body(SECRET, refund)}, refund)
    assert evt.type == WebhookEventType.REFUND_SUCCEEDED
    assert evt.external_refund_id == "rf-1"
    assert evt.amount == 1050


def test_unknown_event_is_ignored():
    body = _notification("deal.closed", {"id": "d-1"})

    evt = _client().parse_webhook({SIGNATURE_HEADER: sign_body(SECRET, body)}, body)

    assert evt.type == WebhookEventType.IGNORED


@pytest.mark.parametrize(
    "headers",
    [{}, {SIGNATURE_HEADER: "deadbeef"}, {SIGNATURE_HEADER: sign_body("other-secret", b"{}")}],
)
def test_invalid_signature_is_rejected(headers):
    body = _notification("payment.succeeded", {"id": "2c5f-yk"})

    with pytest.raises(SignatureVerificationError):
        _client().parse_webhook(headers, body)


def test_missing_webhook_secret_fails_closed():
    body = _notification("payment.succeeded", {"id": "2c5f-yk"})

    with pytest.raises(SignatureVerificationError):
        _client(webhook_secret=None).parse_webhook({SIGNATURE_HEADER: sign_body(SECRET, body)}, body)


def test_malformed_notification_raises_value_error():
    body = b'{"event": "payment.succeeded"}'

    with pytest.raises(ValueError):
        _client().parse_webhook({SIGNATURE_HEADER: sign_body(SECRET, body)}, body)


def test_client_requires_credentials():
    with pytest.raises(RuntimeError):
        YooKassaClient(YooKassaSettings(shop_id="shop-1"))
