import asyncio
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

import application.services.referral_tracker as tracker_module
from application.dtos.payments import CreatePaymentRequest
from application.dtos.referrals import ClickInfo, CreateReferralLinkRequest
from application.services.fraud_service import FraudDetectionService, build_fraud_engine
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.referral_tracker import ReferralTracker
from application.services.webhook_reconciler import WebhookReconciler
from core.settings import FraudSettings, ReferralSettings
from domain.common.exceptions import DomainValidationException
from domain.fraud.entity import IpReputation
from domain.referral.entity import REFERRAL_CODE_ALPHABET, ReferralLink, RewardType
from domain.referral.exceptions import (
    AttributionMiss,
    ReferralCodeConflictException,
    ReferralNotFoundException,
)
from tests.fakes import SIGNED, FakeReputation, no_sleep, webhook_body


BROWSER = ClickInfo(
    ip_address="93.184.216.34",
    user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 Version/17.4 Safari/605.1.15",
    landing_page="/products/42",
    country="DE",
)


def _tracker(store, dispatcher, *, reputation=None) -> ReferralTracker:
    scorer, policy = build_fraud_engine(FraudSettings())
    fraud = FraudDetectionService(scorer, policy, reputation_lookup=reputation)
    return ReferralTracker(store.uow_factory, fraud, ReferralSettings(), event_dispatcher=dispatcher)


def _link_request(**overrides) -> CreateReferralLinkRequest:
    data = {"referrer_id": "user-7", "product_id": "prod-42", "reward_type": "percentage", "reward_value": "10"}
    data.update(overrides)
    return CreateReferralLinkRequest(**data)


@pytest.fixture
def tracker(store, dispatcher) -> ReferralTracker:
    return _tracker(store, dispatcher)


@pytest.mark.asyncio
async def test_create_link_issues_readable_code_and_empty_stats(tracker, store):
    link = await tracker.create_referral_link(_link_request())

    assert re.fullmatch(f"[{REFERRAL_CODE_ALPHABET}]{{8}}", link.referral_code)
    assert link.reward_type == RewardType.PERCENTAGE
    assert link.reward_value == Decimal("10")
    stats = store.stats[link.id]
    assert (stats.click_count, stats.purchase_count, stats.total_earned) == (0, 0, 0)


@pytest.mark.asyncio
async def test_code_collision_is_retried(tracker, store, monkeypatch):
    codes = iter(["AAAAAAAA", "AAAAAAAA", "BBBBBBBB"])
    monkeypatch.setattr(tracker_module, "generate_referral_code", lambda length=8: next(codes))

    first = await tracker.create_referral_link(_link_request())
    second = await tracker.create_referral_link(_link_request(product_id="prod-43"))

    assert first.referral_code == "AAAAAAAA"
    assert second.referral_code == "BBBBBBBB"
    assert len(store.links) == 2


@pytest.mark.asyncio
async def test_code_collision_gives_up_after_attempts(tracker, monkeypatch):
    monkeypatch.setattr(tracker_module, "generate_referral_code", lambda length=8: "AAAAAAAA")
    await tracker.create_referral_link(_link_request())

    with pytest.raises(ReferralCodeConflictException):
        await tracker.create_referral_link(_link_request())


def test_link_request_validation():
    with pytest.raises(ValidationError):
        _link_request(product_id=None)
    with pytest.raises(ValidationError):
        _link_request(reward_value="150")
    # fixed rewards are minor units and may exceed 100
    assert _link_request(reward_type="fixed", reward_value="500").reward_value == Decimal("500")


def test_link_entity_rules():
    with pytest.raises(DomainValidationException):
        ReferralLink.issue(referrer_id="u", referral_code="X", reward_type="percentage", reward_value=Decimal("5"))
    with pytest.raises(DomainValidationException):
        ReferralLink.issue(
            referrer_id="u", referral_code="X", reward_type="percentage", reward_value=Decimal("101"), shop_id="s"
        )


def test_commission_calculation():
    percent = ReferralLink.issue(
        referrer_id="u", referral_code="X", reward_type="percentage", reward_value=Decimal("10"), shop_id="s"
    )
    fixed = ReferralLink.issue(
        referrer_id="u", referral_code="Y", reward_type="fixed", reward_value=Decimal("500"), shop_id="s"
    )

    assert percent.commission_for(2999) == 300
    assert percent.commission_for(0) == 0
    assert fixed.commission_for(10000) == 500
    assert fixed.commission_for(300) == 300


@pytest.mark.asyncio
async def test_clean_click_issues_cookie(tracker, store):
    link = await tracker.create_referral_link(_link_request())

    result = await tracker.create_tracking_cookie(link.referral_code, BROWSER)

    assert result.success is True
    assert result.blocked is False
    assert re.fullmatch(r"[0-9a-f]{64}", result.cookie_value)
    ttl = result.expires_at - datetime.now(timezone.utc)
    assert timedelta(days=29) < ttl <= timedelta(days=30)
    assert result.fraud_analysis.risk_score == 0

    record = store.tracking[result.cookie_value]
    assert record.landing_page == "/products/42"
    assert record.country == "DE"
    assert record.flagged is False
    assert store.stats[link.id].click_count == 1


@pytest.mark.asyncio
async def test_blocked_click_leaves_no_trace(store, dispatcher):
    reputation = FakeReputation(IpReputation(abuse_confidence=100, is_datacenter=True, is_proxy=True))
    tracker = _tracker(store, dispatcher, reputation=reputation)
    link = await tracker.create_referral_link(_link_request())

    result = await tracker.create_tracking_cookie(
        link.referral_code, ClickInfo(ip_address="45.12.0.1", user_agent="curl/8.0")
    )

    assert result.success is False
    assert result.blocked is True
    assert result.reason == "bot_traffic"
    assert result.cookie_value is None
    assert result.fraud_analysis.should_block is True
    assert store.tracking == {}
    assert store.stats[link.id].click_count == 0


@pytest.mark.asyncio
async def test_suspicious_click_is_flagged_but_tracked(tracker, store):
    link = await tracker.create_referral_link(_link_request())

    result = await tracker.create_tracking_cookie(link.referral_code, ClickInfo(ip_address="93.184.216.34"))

    assert result.success is True
    assert result.fraud_analysis.should_flag is False
    assert result.fraud_analysis.risk_score == 40

    flagged = await tracker.create_tracking_cookie(
        link.referral_code, ClickInfo(ip_address="93.184.216.34", user_agent="Wget/1.21")
    )
    assert flagged.fraud_analysis.should_flag is True
    assert store.tracking[flagged.cookie_value].flagged is True
    assert store.stats[link.id].click_count == 2


@pytest.mark.asyncio
async def test_unknown_inactive_or_expired_link(tracker, store):
    with pytest.raises(ReferralNotFoundException):
        await tracker.create_tracking_cookie("NOPE2345", BROWSER)

    link = await tracker.create_referral_link(_link_request())
    store.links[link.id].is_active = False
    with pytest.raises(ReferralNotFoundException):
        await tracker.create_tracking_cookie(link.referral_code, BROWSER)

    expired = await tracker.create_referral_link(
        _link_request(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    )
    with pytest.raises(ReferralNotFoundException):
        await tracker.create_tracking_cookie(expired.referral_code, BROWSER)


@pytest.mark.asyncio
async def test_attribution_accrues_commission(tracker, store, publisher):
    link = await tracker.create_referral_link(_link_request())
    click = await tracker.create_tracking_cookie(link.referral_code, BROWSER)

    result = await tracker.attribute_purchase(click.cookie_value, 2999, "USD", "intent-1")

    assert result.commission_amount == 300
    assert result.currency == "USD"
    assert result.held_for_review is False
    stats = store.stats[link.id]
    assert (stats.purchase_count, stats.total_earned) == (1, 300)
    record = store.tracking[click.cookie_value]
    assert record.is_converted
    assert record.payment_intent_id == "intent-1"
    assert store.outbox_names() == ["referral.commission_accrued"]
    assert publisher.published[0][1]["referrer_id"] == "user-7"


@pytest.mark.asyncio
async def test_cookie_is_attributed_only_once(tracker, store):
    link = await tracker.create_referral_link(_link_request())
    click = await tracker.create_tracking_cookie(link.referral_code, BROWSER)
    await tracker.attribute_purchase(click.cookie_value, 1000, "USD", "intent-1")

    with pytest.raises(AttributionMiss) as exc_info:
        await tracker.attribute_purchase(click.cookie_value, 1000, "USD", "intent-2")

    assert exc_info.value.reason == AttributionMiss.ALREADY_ATTRIBUTED
    assert store.stats[link.id].purchase_count == 1


@pytest.mark.asyncio
async def test_concurrent_attributions_claim_once(tracker, store):
    link = await tracker.create_referral_link(_link_request())
    click = await tracker.create_tracking_cookie(link.referral_code, BROWSER)

    results = await asyncio.gather(
        *[tracker.attribute_purchase(click.cookie_value, 1000, "USD", f"intent-{i}") for i in range(4)],
        return_exceptions=True,
    )

    won = [r for r in results if not isinstance(r, Exception)]
    missed = [r for r in results if isinstance(r, AttributionMiss)]
    assert len(won) == 1
    assert len(missed) == 3
    assert store.stats[link.id].purchase_count == 1
    assert store.stats[link.id].total_earned == 100


@pytest.mark.asyncio
async def test_expired_and_unknown_cookies(tracker, store):
    link = await tracker.create_referral_link(_link_request())
    click = await tracker.create_tracking_cookie(link.referral_code, BROWSER)
    store.tracking[click.cookie_value].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

    with pytest.raises(AttributionMiss) as expired:
        await tracker.attribute_purchase(click.cookie_value, 1000, "USD", "intent-1")
    with pytest.raises(AttributionMiss) as unknown:
        await tracker.attribute_purchase("f" * 64, 1000, "USD", "intent-1")

    assert expired.value.reason == AttributionMiss.EXPIRED
    assert unknown.value.reason == AttributionMiss.NOT_FOUND
    assert store.stats[link.id].purchase_count == 0


@pytest.mark.asyncio
async def test_flagged_click_holds_commission_for_review(tracker, store):
    link = await tracker.create_referral_link(_link_request())
    click = await tracker.create_tracking_cookie(
        link.referral_code, ClickInfo(ip_address="93.184.216.34", user_agent="Wget/1.21")
    )

    result = await tracker.attribute_purchase(click.cookie_value, 1000, "USD", "intent-1")

    assert result.held_for_review is True
    assert store.outbox[0].payload["held_for_review"] is True


@pytest.mark.asyncio
async def test_stats_report_conversion_rate(tracker):
    link = await tracker.create_referral_link(_link_request())
    clicks = [await tracker.create_tracking_cookie(link.referral_code, BROWSER) for _ in range(4)]
    await tracker.attribute_purchase(clicks[0].cookie_value, 5000, "USD", "intent-1")

    stats = await tracker.get_referral_stats(link.referral_code)

    assert stats.click_count == 4
    assert stats.purchase_count == 1
    assert stats.total_earned == 500
    assert stats.conversion_rate == 0.25

    with pytest.raises(ReferralNotFoundException):
        await tracker.get_referral_stats("NOPE2345")


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_unconverted(tracker, store):
    link = await tracker.create_referral_link(_link_request())
    live = await tracker.create_tracking_cookie(link.referral_code, BROWSER)
    stale = await tracker.create_tracking_cookie(link.referral_code, BROWSER)
    converted = await tracker.create_tracking_cookie(link.referral_code, BROWSER)
    await tracker.attribute_purchase(converted.cookie_value, 1000, "USD", "intent-1")
    past = datetime.now(timezone.utc) - timedelta(days=1)
    store.tracking[stale.cookie_value].expires_at = past
    store.tracking[converted.cookie_value].expires_at = past

    deleted = await tracker.cleanup_expired()

    assert deleted == 1
    assert set(store.tracking) == {live.cookie_value, converted.cookie_value}


@pytest.mark.asyncio
async def test_paid_purchase_with_cookie_is_attributed(store, gateways, dispatcher, retry_policy, publisher):
    tracker = _tracker(store, dispatcher)
    reconciler = WebhookReconciler(store.uow_factory, gateways, referral_tracker=tracker, event_dispatcher=dispatcher)
    orchestrator = PaymentOrchestrator(
        store.uow_factory,
        gateways,
        reconciler=reconciler,
        event_dispatcher=dispatcher,
        retry_policy=retry_policy,
        retry_sleep=no_sleep,
    )
    link = await tracker.create_referral_link(_link_request())
    click = await tracker.create_tracking_cookie(link.referral_code, BROWSER)

    created = await orchestrator.create_payment(
        CreatePaymentRequest(
            amount=2999, currency="USD", provider="stripe", order_id="o-1", referral_cookie=click.cookie_value
        )
    )
    body = webhook_body(type="payment.succeeded", external_id=created.payment_intent.provider_payment_id)
    assert await orchestrator.handle_webhook("stripe", SIGNED, body) is True
    # redelivery neither re-applies nor re-attributes
    assert await orchestrator.handle_webhook("stripe", SIGNED, body) is True

    assert publisher.names() == ["payment.succeeded", "referral.commission_accrued"]
    assert store.stats[link.id].purchase_count == 1
    assert store.stats[link.id].total_earned == 300
    assert store.tracking[click.cookie_value].payment_intent_id == created.payment_intent.id
