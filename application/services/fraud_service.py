"""
点击风控服务 - 采集信号并交给领域评分器与策略

外部信号（频率计数、IP 信誉）任一失败时跳过该信号并记入
unavailable_signals，风控本身从不让请求失败。
"""
from __future__ import annotations

from typing import Optional

from application.ports.fraud import ClickVelocityCounter, IpReputationLookup
from core.logging_config import get_logger
from core.settings import FraudSettings
from domain.fraud.entity import ClickContext, FraudAnalysisResult, FraudSignal, IpReputation
from domain.fraud.policy import FraudPolicy
from domain.fraud.scoring import FraudScorer, FraudWeights


logger = get_logger(__name__)


def build_fraud_engine(settings: FraudSettings) -> tuple[FraudScorer, FraudPolicy]:
    """按配置构造评分器与处置策略"""
    scorer = FraudScorer(
        FraudWeights(**settings.weights.model_dump()),
        velocity_max_clicks=settings.velocity_max_clicks,
        datacenter_networks=settings.datacenter_ranges,
        allowed_referrer_hosts=settings.allowed_referrer_hosts,
    )
    policy = FraudPolicy(
        block_threshold=settings.block_threshold,
        flag_threshold=settings.flag_threshold,
    )
    return scorer, policy


class FraudDetectionService:

    def __init__(
        self,
        scorer: FraudScorer,
        policy: FraudPolicy,
        *,
        velocity_counter: Optional[ClickVelocityCounter] = None,
        reputation_lookup: Optional[IpReputationLookup] = None,
        velocity_window_seconds: int = 60,
    ):
        self._scorer = scorer
        self._policy = policy
        self._velocity = velocity_counter
        self._reputation = reputation_lookup
        self._window = velocity_window_seconds

    async def analyze_click(self, context: ClickContext) -> FraudAnalysisResult:
        unavailable: list[FraudSignal] = []
        click_count = await self._count_clicks(context, unavailable)
        reputation = await self._lookup_reputation(context, unavailable)

        score = self._scorer.score(context, click_count=click_count, reputation=reputation)
        result = self._policy.decide(score, unavailable)

        if result.should_block or result.should_flag:
            logger.warning(
                "referral_click_suspicious",
                referral_code=context.referral_code,
                ip_address=context.ip_address,
                risk_score=result.risk_score,
                fraud_types=[t.value for t in result.fraud_types],
                should_block=result.should_block,
                unavailable_signals=[s.value for s in unavailable],
            )
        return result

    async def _count_clicks(self, context: ClickContext, unavailable: list[FraudSignal]) -> Optional[int]:
        if self._velocity is None or not context.ip_address:
            return None
        key = f"{context.referral_code}:{context.ip_address}"
        try:
            return await self._velocity.hit(key, self._window)
        except Exception as exc:
            unavailable.append(FraudSignal.VELOCITY)
            logger.warning("fraud_signal_unavailable", signal=FraudSignal.VELOCITY.value, error=str(exc))
            return None

    async def _lookup_reputation(
        self, context: ClickContext, unavailable: list[FraudSignal]
    ) -> Optional[IpReputation]:
        if self._reputation is None or not context.ip_address:
            return None
        try:
            return await self._reputation.lookup(context.ip_address)
        except Exception as exc:
            unavailable.append(FraudSignal.IP_REPUTATION)
            logger.warning("fraud_signal_unavailable", signal=FraudSignal.IP_REPUTATION.value, error=str(exc))
            return None
