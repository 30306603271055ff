"""In-memory test doubles for the unit of work, repositories and ports.

Every repository call completes without yielding to the event loop, so the
conditional updates below are atomic the same way a single SQL UPDATE is.
"""
from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from application.dtos.payments import (
    NormalizedEvent,
    ProviderPayment,
    ProviderPaymentRequest,
    ProviderRefund,
    ProviderRefundRequest,
)
from domain.common.events import DomainEvent
from domain.common.outbox import OutboxMessage, OutboxRepository
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.currency.entity import ExchangeRate
from domain.currency.repository import ExchangeRateRepository
from domain.fraud.entity import IpReputation
from domain.payment.entity import (
    PaymentIntent,
    PaymentStatus,
    REFUNDABLE_STATUSES,
    Refund,
    RefundStatus,
    WebhookEventRecord,
)
from domain.payment.exceptions import (
    PaymentAlreadyExistsException,
    ProviderError,
    SignatureVerificationError,
)
from domain.payment.repository import PaymentIntentRepository, RefundRepository, WebhookEventRepository
from domain.referral.entity import ReferralLink, ReferralStats, ReferralTrackingRecord
from domain.referral.exceptions import ReferralCodeConflictException
from domain.referral.repository import (
    ReferralLinkRepository,
    ReferralStatsRepository,
    ReferralTrackingRepository,
)


@dataclass
class InMemoryStore:
    intents: dict[str, PaymentIntent] = field(default_factory=dict)
    refunds: dict[str, Refund] = field(default_factory=dict)
    rates: list[ExchangeRate] = field(default_factory=list)
    links: dict[str, ReferralLink] = field(default_factory=dict)
    stats: dict[str, ReferralStats] = field(default_factory=dict)
    tracking: dict[str, ReferralTrackingRecord] = field(default_factory=dict)
    outbox: list[OutboxMessage] = field(default_factory=list)
    webhook_events: list[WebhookEventRecord] = field(default_factory=list)
    commits: int = 0

    def uow_factory(self, readonly: bool = False) -> "FakeUnitOfWork":
        return FakeUnitOfWork(self, readonly=readonly)

    def outbox_names(self) -> list[str]:
        return [m.name for m in self.outbox]

    def webhook_reasons(self) -> list[tuple[str, bool]]:
        return [(r.reason, r.accepted) for r in self.webhook_events]


def _status_after_refund(amount: int, refunded_amount: int) -> PaymentStatus:
    # mirrors the CASE expression in the SQL reserve/release updates
    if refunded_amount <= 0:
        return PaymentStatus.SUCCEEDED
    if refunded_amount >= amount:
        return PaymentStatus.REFUNDED
    return PaymentStatus.PARTIALLY_REFUNDED


class FakePaymentRepository(PaymentIntentRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def add(self, intent: PaymentIntent) -> PaymentIntent:
        for existing in self.store.intents.values():
            if intent.idempotency_key and existing.idempotency_key == intent.idempotency_key:
                raise PaymentAlreadyExistsException(intent.idempotency_key)
        self.store.intents[intent.id] = copy.deepcopy(intent)
        return copy.deepcopy(intent)

    async def get_by_id(self, intent_id: str) -> Optional[PaymentIntent]:
        return copy.deepcopy(self.store.intents.get(intent_id))

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PaymentIntent]:
        for intent in self.store.intents.values():
            if intent.idempotency_key == idempotency_key:
                return copy.deepcopy(intent)
        return None

    async def get_by_provider_payment_id(self, provider: str, provider_payment_id: str) -> Optional[PaymentIntent]:
        for intent in self.store.intents.values():
            if intent.provider.value == provider and intent.provider_payment_id == provider_payment_id:
                return copy.deepcopy(intent)
        return None

    async def compare_and_set_status(
        self,
        intent_id: str,
        expected: PaymentStatus,
        new_status: PaymentStatus,
        *,
        failure_reason: Optional[str] = None,
        succeeded_at: Optional[datetime] = None,
    ) -> bool:
        intent = self.store.intents.get(intent_id)
        if intent is None or intent.status != expected:
            return False
        intent.status = PaymentStatus(new_status)
        if failure_reason is not None:
            intent.failure_reason = failure_reason
        if succeeded_at is not None:
            intent.succeeded_at = succeeded_at
        return True

    async def reserve_refund(self, intent_id: str, amount: int) -> Optional[PaymentIntent]:
        intent = self.store.intents.get(intent_id)
        if intent is None or intent.status not in REFUNDABLE_STATUSES:
            return None
        if intent.refunded_amount + amount > intent.amount:
            return None
        intent.refunded_amount += amount
        intent.status = _status_after_refund(intent.amount, intent.refunded_amount)
        return copy.deepcopy(intent)

    async def release_refund(self, intent_id: str, amount: int) -> Optional[PaymentIntent]:
        intent = self.store.intents.get(intent_id)
        if intent is None or intent.refunded_amount < amount:
            return None
        if intent.status not in (PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED):
            return None
        intent.refunded_amount -= amount
        intent.status = _status_after_refund(intent.amount, intent.refunded_amount)
        return copy.deepcopy(intent)


class FakeRefundRepository(RefundRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def add(self, refund: Refund) -> Refund:
        self.store.refunds[refund.id] = copy.deepcopy(refund)
        return copy.deepcopy(refund)

    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        return copy.deepcopy(self.store.refunds.get(refund_id))

    async def get_by_provider_refund_id(self, provider: str, provider_refund_id: str) -> Optional[Refund]:
        for refund in self.store.refunds.values():
            if refund.provider.value == provider and refund.provider_refund_id == provider_refund_id:
                return copy.deepcopy(refund)
        return None

    async def list_by_payment(self, payment_intent_id: str) -> list[Refund]:
        return [copy.deepcopy(r) for r in self.store.refunds.values() if r.payment_intent_id == payment_intent_id]

    async def attach_provider_refund(self, refund_id: str, provider_refund_id: str) -> None:
        self.store.refunds[refund_id].provider_refund_id = provider_refund_id

    async def compare_and_set_status(
        self,
        refund_id: str,
        expected: Iterable[RefundStatus],
        new_status: RefundStatus,
        *,
        failure_reason: Optional[str] = None,
    ) -> bool:
        refund = self.store.refunds.get(refund_id)
        if refund is None or refund.status not in set(expected):
            return False
        refund.status = RefundStatus(new_status)
        if failure_reason is not None:
            refund.failure_reason = failure_reason
        return True


class FakeExchangeRateRepository(ExchangeRateRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get_latest(self, base_currency: str, quote_currency: str) -> Optional[ExchangeRate]:
        matching = [
            r for r in self.store.rates
            if r.base_currency == base_currency.upper() and r.quote_currency == quote_currency.upper()
        ]
        if not matching:
            return None
        return copy.deepcopy(max(matching, key=lambda r: r.fetched_at))

    async def add(self, rate: ExchangeRate) -> ExchangeRate:
        self.store.rates.append(copy.deepcopy(rate))
        return rate


class FakeReferralLinkRepository(ReferralLinkRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def add(self, link: ReferralLink) -> ReferralLink:
        if any(l.referral_code == link.referral_code for l in self.store.links.values()):
            raise ReferralCodeConflictException(link.referral_code)
        self.store.links[link.id] = copy.deepcopy(link)
        return link

    async def get_by_id(self, link_id: str) -> Optional[ReferralLink]:
        return copy.deepcopy(self.store.links.get(link_id))

    async def get_by_code(self, referral_code: str) -> Optional[ReferralLink]:
        for link in self.store.links.values():
            if link.referral_code == referral_code:
                return copy.deepcopy(link)
        return None


class FakeReferralStatsRepository(ReferralStatsRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create(self, referral_link_id: str) -> ReferralStats:
        stats = ReferralStats(referral_link_id=referral_link_id)
        self.store.stats[referral_link_id] = stats
        return copy.deepcopy(stats)

    async def get(self, referral_link_id: str) -> Optional[ReferralStats]:
        return copy.deepcopy(self.store.stats.get(referral_link_id))

    async def increment_clicks(self, referral_link_id: str, by: int = 1) -> None:
        self.store.stats[referral_link_id].click_count += by

    async def record_purchase(self, referral_link_id: str, commission_amount: int) -> None:
        stats = self.store.stats[referral_link_id]
        stats.purchase_count += 1
        stats.total_earned += commission_amount


class FakeTrackingRepository(ReferralTrackingRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def add(self, record: ReferralTrackingRecord) -> ReferralTrackingRecord:
        self.store.tracking[record.cookie_value] = copy.deepcopy(record)
        return record

    async def get_by_cookie(self, cookie_value: str) -> Optional[ReferralTrackingRecord]:
        return copy.deepcopy(self.store.tracking.get(cookie_value))

    async def claim(
        self,
        cookie_value: str,
        *,
        payment_intent_id: str,
        commission_amount: int,
        now: datetime,
    ) -> Optional[ReferralTrackingRecord]:
        record = self.store.tracking.get(cookie_value)
        if record is None or record.converted_at is not None or record.expires_at <= now:
            return None
        record.converted_at = now
        record.payment_intent_id = payment_intent_id
        record.commission_amount = commission_amount
        return copy.deepcopy(record)

    async def delete_expired(self, now: datetime) -> int:
        expired = [
            cookie for cookie, r in self.store.tracking.items()
            if r.converted_at is None and r.expires_at <= now
        ]
        for cookie in expired:
            del self.store.tracking[cookie]
        return len(expired)


class FakeOutboxRepository(OutboxRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def add(self, event: DomainEvent) -> None:
        self.store.outbox.append(
            OutboxMessage(
                id=event.event_id,
                name=event.name,
                payload=event.to_payload(),
                created_at=event.occurred_at,
            )
        )

    async def list_pending(self, limit: int = 100) -> list[OutboxMessage]:
        return [m for m in self.store.outbox if m.dispatched_at is None][:limit]

    async def mark_dispatched(self, event_ids: Iterable[str]) -> int:
        ids = set(event_ids)
        marked = 0
        for message in self.store.outbox:
            if message.id in ids and message.dispatched_at is None:
                message.dispatched_at = datetime.now(timezone.utc)
                marked += 1
        return marked


class FakeWebhookEventRepository(WebhookEventRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def add(self, record: WebhookEventRecord) -> None:
        self.store.webhook_events.append(copy.deepcopy(record))

    async def list_recent(self, *, provider: Optional[str] = None, limit: int = 100) -> list[WebhookEventRecord]:
        records = [r for r in reversed(self.store.webhook_events) if provider is None or r.provider == provider]
        return [copy.deepcopy(r) for r in records[:limit]]


class FakeUnitOfWork(AbstractUnitOfWork):
    def __init__(self, store: InMemoryStore, *, readonly: bool = False):
        super().__init__(readonly=readonly)
        self.store = store
        self.payment_repository = FakePaymentRepository(store)
        self.refund_repository = FakeRefundRepository(store)
        self.exchange_rate_repository = FakeExchangeRateRepository(store)
        self.referral_link_repository = FakeReferralLinkRepository(store)
        self.referral_stats_repository = FakeReferralStatsRepository(store)
        self.tracking_repository = FakeTrackingRepository(store)
        self.outbox_repository = FakeOutboxRepository(store)
        self.webhook_event_repository = FakeWebhookEventRepository(store)

    async def commit(self) -> None:
        self._committed = True
        self.store.commits += 1

    async def rollback(self) -> None:
        self._committed = False


class StubGateway:
    """PaymentGateway double.

    ``parse_webhook`` accepts a JSON body with NormalizedEvent fields and
    requires ``X-Stub-Signature: ok``.
    """

    signature_scheme = "stub"

    def __init__(
        self,
        provider: str,
        *,
        currencies: Iterable[str] = ("USD",),
        refund_requires_amount: bool = False,
        refunds_supported: bool = True,
    ):
        self.provider = provider
        self.currencies = {c.upper() for c in currencies}
        self.refund_requires_amount = refund_requires_amount
        self.refunds_supported = refunds_supported
        self.payment_calls: list[ProviderPaymentRequest] = []
        self.refund_calls: list[ProviderRefundRequest] = []
        # exceptions raised by the next calls, in order
        self.payment_failures: list[Exception] = []
        self.refund_failures: list[Exception] = []
        self.payment_status = PaymentStatus.PENDING
        self.refund_status = RefundStatus.PENDING
        self.closed = False

    def supports_currency(self, currency: str) -> bool:
        return currency.upper() in self.currencies

    async def create_payment(self, req: ProviderPaymentRequest) -> ProviderPayment:
        self.payment_calls.append(req)
        if self.payment_failures:
            raise self.payment_failures.pop(0)
        return ProviderPayment(
            external_id=f"{self.provider}_pay_{req.idempotency_key[:12]}",
            status=self.payment_status,
            client_secret="cs_test_secret" if self.provider == "stripe" else None,
            redirect_url=None if self.provider == "stripe" else f"https://{self.provider}.test/pay",
            raw_status=self.payment_status.value,
        )

    async def create_refund(self, req: ProviderRefundRequest) -> ProviderRefund:
        self.refund_calls.append(req)
        if not self.refunds_supported:
            raise ProviderError("refunds not supported", provider=self.provider, provider_code="refund_not_supported")
        if self.refund_requires_amount and req.amount is None:
            raise ProviderError("amount required", provider=self.provider, provider_code="amount_required")
        if self.refund_failures:
            raise self.refund_failures.pop(0)
        return ProviderRefund(
            external_refund_id=f"{self.provider}_re_{len(self.refund_calls)}",
            status=self.refund_status,
            raw_status=self.refund_status.value,
        )

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> NormalizedEvent:
        signature = {k.lower(): v for k, v in headers.items()}.get("x-stub-signature")
        if signature != "ok":
            raise SignatureVerificationError("bad stub signature", provider=self.provider)
        data = json.loads(body)
        return NormalizedEvent(provider=self.provider, **data)

    async def aclose(self) -> None:
        self.closed = True


def webhook_body(**fields: Any) -> bytes:
    return json.dumps(fields).encode("utf-8")


SIGNED = {"X-Stub-Signature": "ok"}


class FakeRateFetcher:
    def __init__(self, rates: Optional[dict[tuple[str, str], Decimal]] = None, *, fail: bool = False):
        self.rates = rates or {}
        self.fail = fail
        self.calls: list[tuple[str, str]] = []

    async def fetch_rate(self, base_currency: str, quote_currency: str) -> Decimal:
        self.calls.append((base_currency, quote_currency))
        if self.fail:
            raise ConnectionError("rate source unreachable")
        try:
            return self.rates[(base_currency, quote_currency)]
        except KeyError:
            raise LookupError(f"no rate for {base_currency}->{quote_currency}")


class FakeReputation:
    def __init__(self, result: Optional[IpReputation] = None, *, fail: bool = False):
        self.result = result
        self.fail = fail
        self.calls: list[str] = []

    async def lookup(self, ip_address: str) -> Optional[IpReputation]:
        self.calls.append(ip_address)
        if self.fail:
            raise TimeoutError("reputation service timed out")
        return self.result


class FailingVelocityCounter:
    async def hit(self, key: str, window_seconds: int) -> int:
        raise ConnectionError("redis down")


class RecordingPublisher:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.published: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, name: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.published.append((name, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.published]


async def no_sleep(_seconds: float) -> None:
    return None


def seed_intent(
    store: InMemoryStore,
    *,
    provider: str = "stripe",
    amount: int = 10000,
    currency: str = "USD",
    status: PaymentStatus = PaymentStatus.SUCCEEDED,
    refunded_amount: int = 0,
    provider_payment_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> PaymentIntent:
    intent = PaymentIntent.open(
        amount=amount,
        currency=currency,
        provider=provider,
        idempotency_key=f"seed-{len(store.intents) + 1}",
        metadata=metadata,
    )
    intent.status = status
    intent.refunded_amount = refunded_amount
    intent.provider_payment_id = provider_payment_id or f"{provider}_pay_{len(store.intents) + 1}"
    store.intents[intent.id] = intent
    return copy.deepcopy(intent)


def seed_refund(
    store: InMemoryStore,
    intent: PaymentIntent,
    *,
    amount: Optional[int] = None,
    status: RefundStatus = RefundStatus.PENDING,
    provider_refund_id: Optional[str] = None,
) -> Refund:
    """Store a refund together with the reservation it holds on the intent."""
    refund = Refund.open(intent, amount or intent.amount)
    refund.status = status
    refund.provider_refund_id = provider_refund_id or f"{intent.provider.value}_re_{len(store.refunds) + 1}"
    store.refunds[refund.id] = refund
    stored = store.intents[intent.id]
    stored.refunded_amount += refund.amount
    stored.status = _status_after_refund(stored.amount, stored.refunded_amount)
    return copy.deepcopy(refund)
