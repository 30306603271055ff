import pytest

from application.services.fraud_service import FraudDetectionService, build_fraud_engine
from core.settings import FraudSettings
from domain.common.exceptions import DomainValidationException
from domain.fraud.entity import ClickContext, FraudScore, FraudSignal, FraudType, IpReputation
from domain.fraud.policy import FraudPolicy
from domain.fraud.scoring import FraudScorer
from infrastructure.fraud.velocity import InMemoryClickVelocityCounter
from tests.fakes import FailingVelocityCounter, FakeReputation


BROWSER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/124.0 Safari/537.36"
PUBLIC_IP = "93.184.216.34"


def _ctx(**overrides) -> ClickContext:
    data = {"referral_code": "ABCD2345", "ip_address": PUBLIC_IP, "user_agent": BROWSER_UA}
    data.update(overrides)
    return ClickContext(**data)


def test_clean_browser_click_scores_zero():
    score = FraudScorer().score(_ctx(), click_count=1)

    assert score.points == 0
    assert score.fraud_types == []


def test_missing_user_agent():
    score = FraudScorer().score(_ctx(user_agent=None))

    assert score.points == 40
    assert score.fraud_types == [FraudType.BOT_TRAFFIC]


def test_bot_user_agent_is_capped():
    # bot signature 50 + short 10 + no mozilla 15, capped at 60
    score = FraudScorer().score(_ctx(user_agent="curl/8.0"))

    assert score.points == 60
    assert score.details["bot_traffic"]["user_agent"] == ["bot_signature", "short", "no_mozilla"]


def test_velocity_above_limit():
    scorer = FraudScorer(velocity_max_clicks=5)

    assert scorer.score(_ctx(), click_count=5).points == 0
    assert scorer.score(_ctx(), click_count=6).points == 40
    assert scorer.score(_ctx(), click_count=50).points == 60


def test_private_and_datacenter_addresses():
    scorer = FraudScorer(datacenter_networks=["34.64.0.0/10"])

    assert scorer.score(_ctx(ip_address="10.0.0.7")).points == 10
    assert scorer.score(_ctx(ip_address="34.80.1.1")).points == 20
    assert scorer.score(_ctx(ip_address="not-an-ip")).points == 0


def test_remote_reputation_adds_ip_abuse():
    reputation = IpReputation(abuse_confidence=90, is_datacenter=True, is_tor=True)

    score = FraudScorer().score(_ctx(), reputation=reputation)

    assert score.points == 30 + 20 + 15
    assert score.fraud_types == [FraudType.IP_ABUSE]


def test_referrer_checks():
    scorer = FraudScorer(allowed_referrer_hosts=["example.com"])

    assert scorer.score(_ctx(referrer_url="https://blog.example.com/post")).points == 0
    assert scorer.score(_ctx(referrer_url="https://spam.test/")).points == 5
    assert scorer.score(_ctx(referrer_url="javascript:alert(1)")).points == 10


def test_score_never_exceeds_hundred():
    reputation = IpReputation(abuse_confidence=100, is_datacenter=True, is_proxy=True)

    score = FraudScorer().score(
        _ctx(user_agent="python-requests/2.31", referrer_url="ftp://x"), click_count=30, reputation=reputation
    )

    assert score.points == 100


def test_extra_signals_never_lower_the_score():
    scorer = FraudScorer()
    base = scorer.score(_ctx(user_agent="Go-http-client/1.1")).points

    assert scorer.score(_ctx(user_agent="Go-http-client/1.1"), click_count=9).points >= base
    assert scorer.score(_ctx(user_agent="Go-http-client/1.1"), reputation=IpReputation()).points >= base


@pytest.mark.parametrize(
    "points, block, flag",
    [(0, False, False), (49, False, False), (50, False, True), (79, False, True), (80, True, False), (100, True, False)],
)
def test_policy_thresholds(points, block, flag):
    score = FraudScore(points=points, fraud_types=[FraudType.BOT_TRAFFIC] if points else [])

    result = FraudPolicy().decide(score)

    assert result.should_block is block
    assert result.should_flag is flag
    assert not (result.should_block and result.should_flag)


def test_policy_rejects_inverted_thresholds():
    with pytest.raises(DomainValidationException):
        FraudPolicy(block_threshold=50, flag_threshold=60)


def test_block_reason_names_first_fraud_type():
    scorer = FraudScorer()
    result = FraudPolicy().decide(scorer.score(_ctx(user_agent="curl/8.0"), click_count=20))

    assert result.should_block is True
    assert result.block_reason == FraudType.CLICK_VELOCITY.value
    assert "Block automated traffic" in result.recommendations


def _service(**kwargs) -> FraudDetectionService:
    scorer, policy = build_fraud_engine(FraudSettings())
    return FraudDetectionService(scorer, policy, **kwargs)


@pytest.mark.asyncio
async def test_velocity_counter_drives_blocking():
    service = _service(velocity_counter=InMemoryClickVelocityCounter())
    ctx = _ctx(user_agent="curl/8.0")

    results = [await service.analyze_click(ctx) for _ in range(8)]

    # 60 for the user agent alone flags; velocity past five clicks pushes it over 80
    assert results[0].should_flag is True
    assert results[0].should_block is False
    assert results[-1].should_block is True
    assert FraudType.CLICK_VELOCITY in results[-1].fraud_types


@pytest.mark.asyncio
async def test_failed_signals_are_skipped_and_reported():
    service = _service(velocity_counter=FailingVelocityCounter(), reputation_lookup=FakeReputation(fail=True))

    result = await service.analyze_click(_ctx())

    assert result.risk_score == 0
    assert result.unavailable_signals == [FraudSignal.VELOCITY, FraudSignal.IP_REPUTATION]


@pytest.mark.asyncio
async def test_reputation_lookup_is_used():
    lookup = FakeReputation(IpReputation(abuse_confidence=75))

    result = await _service(reputation_lookup=lookup).analyze_click(_ctx())

    assert result.risk_score == 30
    assert lookup.calls == [PUBLIC_IP]


@pytest.mark.asyncio
async def test_in_memory_counter_window_slides():
    now = [1000.0]
    counter = InMemoryClickVelocityCounter(clock=lambda: now[0])

    assert await counter.hit("k", 60) == 1
    assert await counter.hit("k", 60) == 2
    now[0] += 61
    assert await counter.hit("k", 60) == 1
    assert await counter.hit("other", 60) == 1


@pytest.mark.asyncio
async def test_in_memory_counter_forgets_idle_keys():
    now = [1000.0]
    counter = InMemoryClickVelocityCounter(clock=lambda: now[0])
    for n in range(1000):
        await counter.hit(f"code:10.0.{n // 256}.{n % 256}", 60)
    assert len(counter) == 1000

    now[0] += 61
    assert await counter.hit("code:203.0.113.9", 60) == 1

    assert len(counter) == 1


@pytest.mark.asyncio
async def test_in_memory_counter_caps_key_count():
    now = [1000.0]
    counter = InMemoryClickVelocityCounter(clock=lambda: now[0], max_keys=3)

    for key in ["a", "b", "c", "d", "e"]:
        await counter.hit(key, 60)

    assert len(counter) == 3
    # the most recently active key keeps its count
    assert await counter.hit("e", 60) == 2
