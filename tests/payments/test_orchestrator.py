from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from application.dtos.payments import CreatePaymentRequest
from application.services.currency_service import CurrencyConverter
from application.services.payment_orchestrator import PaymentOrchestrator, derive_idempotency_key
from core.settings import ExchangeRateSettings
from domain.currency.entity import ExchangeRate
from domain.payment.entity import PaymentStatus
from domain.payment.exceptions import InconsistentStateError, PaymentNotFoundException, ProviderError
from shared.codes.payment_codes import PaymentCode
from tests.fakes import FakePaymentRepository, FakeRateFetcher, no_sleep


def _request(**overrides) -> CreatePaymentRequest:
    data = {"amount": 2999, "currency": "usd", "provider": "Stripe", "order_id": "order-1"}
    data.update(overrides)
    return CreatePaymentRequest(**data)


@pytest.mark.asyncio
async def test_create_payment_persists_pending_intent(orchestrator, store, gateways):
    result = await orchestrator.create_payment(_request())

    assert result.success is True
    dto = result.payment_intent
    assert dto.status == PaymentStatus.PENDING
    assert dto.amount == 2999
    assert dto.currency == "USD"
    assert dto.provider == "stripe"
    assert dto.client_secret == "cs_test_secret"
    assert dto.provider_payment_id.startswith("stripe_pay_")

    stored = store.intents[dto.id]
    assert stored.provider_payment_id == dto.provider_payment_id
    assert stored.metadata["order_id"] == "order-1"
    assert len(gateways["stripe"].payment_calls) == 1


@pytest.mark.asyncio
async def test_same_idempotency_key_creates_one_intent(orchestrator, store, gateways):
    first = await orchestrator.create_payment(_request(idempotency_key="checkout-42"))
    second = await orchestrator.create_payment(_request(idempotency_key="checkout-42"))

    assert first.payment_intent.id == second.payment_intent.id
    assert len(store.intents) == 1
    assert len(gateways["stripe"].payment_calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "changed",
    [{"amount": 5000}, {"currency": "EUR"}, {"provider": "coingate"}],
)
async def test_reused_idempotency_key_with_different_payment_is_rejected(orchestrator, store, gateways, changed):
    first = await orchestrator.create_payment(_request(idempotency_key="checkout-42"))

    second = await orchestrator.create_payment(_request(idempotency_key="checkout-42", **changed))

    assert first.success is True
    assert second.success is False
    assert second.error.code == PaymentCode.IDEMPOTENCY_KEY_REUSED
    assert second.error.type == "IdempotencyKeyReused"
    assert second.error.details == {"payment_intent_id": first.payment_intent.id}
    assert len(store.intents) == 1
    assert len(gateways["stripe"].payment_calls) == 1
    assert gateways["coingate"].payment_calls == []


@pytest.mark.asyncio
async def test_converted_payment_replay_matches_original_request(store, gateways, dispatcher, retry_policy):
    fetcher = FakeRateFetcher({("EUR", "USD"): Decimal("1.0850")})
    converter = CurrencyConverter(store.uow_factory, fetcher, ExchangeRateSettings())
    orchestrator = PaymentOrchestrator(
        store.uow_factory,
        gateways,
        currency_converter=converter,
        event_dispatcher=dispatcher,
        retry_policy=retry_policy,
        retry_sleep=no_sleep,
    )

    first = await orchestrator.create_payment(_request(amount=10000, source_currency="EUR", idempotency_key="k-1"))
    replay = await orchestrator.create_payment(_request(amount=10000, source_currency="EUR", idempotency_key="k-1"))
    other = await orchestrator.create_payment(_request(amount=10850, idempotency_key="k-1"))

    assert replay.success is True
    assert replay.payment_intent.id == first.payment_intent.id
    # same charged amount, but the caller asked for a different payment
    assert other.success is False
    assert other.error.code == PaymentCode.IDEMPOTENCY_KEY_REUSED
    assert len(gateways["stripe"].payment_calls) == 1


@pytest.mark.asyncio
async def test_order_id_derives_stable_key(orchestrator, store):
    first = await orchestrator.create_payment(_request())
    second = await orchestrator.create_payment(_request())

    assert first.payment_intent.id == second.payment_intent.id
    assert len(store.intents) == 1


def test_derived_key_changes_with_amount():
    assert derive_idempotency_key(_request()) == derive_idempotency_key(_request())
    assert derive_idempotency_key(_request()) != derive_idempotency_key(_request(amount=3000))
    # without an order id every call is a new purchase
    assert derive_idempotency_key(_request(order_id=None)) != derive_idempotency_key(_request(order_id=None))


@pytest.mark.asyncio
async def test_referral_cookie_kept_locally_but_not_sent(orchestrator, store, gateways):
    result = await orchestrator.create_payment(_request(referral_cookie="c" * 64))

    call = gateways["stripe"].payment_calls[0]
    assert "referral_cookie" not in call.metadata
    assert call.metadata["order_id"] == "order-1"
    assert store.intents[result.payment_intent.id].referral_cookie == "c" * 64


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -100])
async def test_non_positive_amount_is_rejected(orchestrator, gateways, amount):
    result = await orchestrator.create_payment(_request(amount=amount))

    assert result.success is False
    assert result.error.type == "ValidationError"
    assert gateways["stripe"].payment_calls == []


@pytest.mark.asyncio
async def test_unsupported_currency_is_rejected_before_provider_call(orchestrator, store, gateways):
    result = await orchestrator.create_payment(_request(currency="RUB"))

    assert result.success is False
    assert result.error.code == PaymentCode.UNSUPPORTED_CURRENCY
    assert gateways["stripe"].payment_calls == []
    assert store.intents == {}


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected(orchestrator):
    result = await orchestrator.create_payment(_request(provider="paypal"))

    assert result.success is False
    assert result.error.code == PaymentCode.UNSUPPORTED_PROVIDER


@pytest.mark.asyncio
async def test_retryable_error_is_retried_with_same_key(orchestrator, gateways):
    stripe = gateways["stripe"]
    stripe.payment_failures = [ProviderError("gateway timeout", provider="stripe", retryable=True)]

    result = await orchestrator.create_payment(_request())

    assert result.success is True
    assert len(stripe.payment_calls) == 2
    assert stripe.payment_calls[0].idempotency_key == stripe.payment_calls[1].idempotency_key


@pytest.mark.asyncio
async def test_non_retryable_error_fails_without_retry(orchestrator, store, gateways):
    stripe = gateways["stripe"]
    stripe.payment_failures = [ProviderError("card declined", provider="stripe", provider_code="card_declined")]

    result = await orchestrator.create_payment(_request())

    assert result.success is False
    assert result.error.code == PaymentCode.PROVIDER_ERROR
    assert result.error.details["provider_code"] == "card_declined"
    assert len(stripe.payment_calls) == 1
    assert store.intents == {}


@pytest.mark.asyncio
async def test_retries_stop_after_max_attempts(orchestrator, gateways):
    stripe = gateways["stripe"]
    stripe.payment_failures = [
        ProviderError("unavailable", provider="stripe", retryable=True) for _ in range(5)
    ]

    result = await orchestrator.create_payment(_request())

    assert result.success is False
    assert result.error.code == PaymentCode.PROVIDER_RECOVERABLE
    assert len(stripe.payment_calls) == 3


@pytest.mark.asyncio
async def test_provider_success_at_creation_is_stored_as_pending(orchestrator, store, gateways):
    gateways["stripe"].payment_status = PaymentStatus.SUCCEEDED

    result = await orchestrator.create_payment(_request())

    assert result.payment_intent.status == PaymentStatus.PENDING
    assert store.intents[result.payment_intent.id].status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_requires_action_status_is_kept(orchestrator, gateways):
    gateways["yookassa"].payment_status = PaymentStatus.REQUIRES_ACTION

    result = await orchestrator.create_payment(_request(provider="yookassa", currency="RUB", amount=150000))

    assert result.payment_intent.status == PaymentStatus.REQUIRES_ACTION
    assert result.payment_intent.redirect_url == "https://yookassa.test/pay"


@pytest.mark.asyncio
async def test_persist_failure_after_provider_success_escalates(orchestrator, gateways, monkeypatch):
    async def broken_add(self, intent):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(FakePaymentRepository, "add", broken_add)

    with pytest.raises(InconsistentStateError) as exc_info:
        await orchestrator.create_payment(_request())
    assert exc_info.value.details["provider"] == "stripe"
    assert len(gateways["stripe"].payment_calls) == 1


@pytest.mark.asyncio
async def test_source_currency_is_converted_before_charging(store, gateways, dispatcher, retry_policy):
    fetcher = FakeRateFetcher({("EUR", "USD"): Decimal("1.0850")})
    converter = CurrencyConverter(store.uow_factory, fetcher, ExchangeRateSettings())
    orchestrator = PaymentOrchestrator(
        store.uow_factory,
        gateways,
        currency_converter=converter,
        event_dispatcher=dispatcher,
        retry_policy=retry_policy,
        retry_sleep=no_sleep,
    )

    result = await orchestrator.create_payment(_request(amount=10000, source_currency="EUR"))

    assert result.success is True
    assert result.payment_intent.amount == 10850
    assert result.payment_intent.currency == "USD"
    metadata = result.payment_intent.metadata
    assert metadata["source_amount"] == 10000
    assert metadata["source_currency"] == "EUR"
    assert metadata["exchange_rate"] == "1.0850"
    assert gateways["stripe"].payment_calls[0].amount == 10850


@pytest.mark.asyncio
async def test_missing_exchange_rate_fails_the_payment(store, gateways, dispatcher, retry_policy):
    converter = CurrencyConverter(store.uow_factory, FakeRateFetcher(fail=True), ExchangeRateSettings())
    orchestrator = PaymentOrchestrator(
        store.uow_factory,
        gateways,
        currency_converter=converter,
        event_dispatcher=dispatcher,
        retry_policy=retry_policy,
        retry_sleep=no_sleep,
    )

    result = await orchestrator.create_payment(_request(source_currency="EUR"))

    assert result.success is False
    assert result.error.code == PaymentCode.EXCHANGE_RATE_NOT_FOUND
    assert gateways["stripe"].payment_calls == []


@pytest.mark.asyncio
async def test_conversion_uses_cached_rate(store, gateways, dispatcher, retry_policy):
    store.rates.append(
        ExchangeRate("EUR", "USD", Decimal("1.1"), datetime.now(timezone.utc) - timedelta(hours=1))
    )
    fetcher = FakeRateFetcher()
    converter = CurrencyConverter(store.uow_factory, fetcher, ExchangeRateSettings())
    orchestrator = PaymentOrchestrator(
        store.uow_factory,
        gateways,
        currency_converter=converter,
        event_dispatcher=dispatcher,
        retry_policy=retry_policy,
        retry_sleep=no_sleep,
    )

    result = await orchestrator.create_payment(_request(amount=1000, source_currency="EUR"))

    assert result.payment_intent.amount == 1100
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_get_payment_returns_intent_with_refunds(orchestrator):
    created = await orchestrator.create_payment(_request())

    details = await orchestrator.get_payment(created.payment_intent.id)

    assert details.payment_intent.id == created.payment_intent.id
    assert details.refunds == []


@pytest.mark.asyncio
async def test_get_unknown_payment_raises(orchestrator):
    with pytest.raises(PaymentNotFoundException):
        await orchestrator.get_payment("missing")
