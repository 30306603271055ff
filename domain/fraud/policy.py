"""风险分数 -> 处置决策"""
from __future__ import annotations

from dataclasses import dataclass

from domain.common.exceptions import DomainValidationException

from .entity import FraudAnalysisResult, FraudScore, FraudSignal, FraudType


RECOMMENDATIONS: dict[FraudType, str] = {
    FraudType.CLICK_VELOCITY: "Rate limit this IP address for the referral code",
    FraudType.BOT_TRAFFIC: "Block automated traffic",
    FraudType.IP_ABUSE: "Review traffic from this IP address",
    FraudType.SUSPICIOUS_REFERRER: "Verify the traffic source of this referral",
}


@dataclass(frozen=True)
class FraudPolicy:
    block_threshold: int = 80
    flag_threshold: int = 50

    def __post_init__(self):
        if not (0 < self.flag_threshold < self.block_threshold <= 100):
            raise DomainValidationException(
                "Fraud thresholds must satisfy 0 < flag < block <= 100",
                field="flag_threshold",
                details={"flag": self.flag_threshold, "block": self.block_threshold},
            )

    def decide(self, score: FraudScore, unavailable: list[FraudSignal] | None = None) -> FraudAnalysisResult:
        risk = score.points
        should_block = risk >= self.block_threshold
        should_flag = self.flag_threshold <= risk < self.block_threshold
        recommendations = [RECOMMENDATIONS[t] for t in score.fraud_types]
        if should_flag:
            recommendations.append("Hold commission for manual review")
        return FraudAnalysisResult(
            risk_score=risk,
            fraud_types=list(score.fraud_types),
            should_block=should_block,
            should_flag=should_flag,
            recommendations=recommendations,
            unavailable_signals=list(unavailable or []),
            details=dict(score.details),
        )
