"""
欺诈评分领域模型

ClickContext 为一次推荐点击的输入；FraudAnalysisResult 为评分结果，
只在内存中流转并记录日志，不落库。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class FraudType(str, Enum):
    CLICK_VELOCITY = "click_velocity"
    BOT_TRAFFIC = "bot_traffic"
    IP_ABUSE = "ip_abuse"
    SUSPICIOUS_REFERRER = "suspicious_referrer"


class FraudSignal(str, Enum):
    """可独立降级的外部信号"""
    VELOCITY = "velocity"
    IP_REPUTATION = "ip_reputation"


@dataclass(frozen=True)
class ClickContext:
    referral_code: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer_url: Optional[str] = None


@dataclass(frozen=True)
class IpReputation:
    """远端 IP 信誉查询结果（字段均为可选观测）"""

    abuse_confidence: int = 0
    is_datacenter: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    country: Optional[str] = None


@dataclass
class FraudScore:
    """评分累加器：每条启发式只加非负分，保证单调"""

    points: int = 0
    fraud_types: list[FraudType] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    def add(self, fraud_type: FraudType, points: int, **detail: Any) -> None:
        if points <= 0:
            return
        self.points += points
        if fraud_type not in self.fraud_types:
            self.fraud_types.append(fraud_type)
        if detail:
            self.details.setdefault(fraud_type.value, {}).update(detail)


@dataclass
class FraudAnalysisResult:
    risk_score: int
    fraud_types: list[FraudType] = field(default_factory=list)
    should_block: bool = False
    should_flag: bool = False
    recommendations: list[str] = field(default_factory=list)
    unavailable_signals: list[FraudSignal] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def block_reason(self) -> Optional[str]:
        if not self.should_block:
            return None
        return self.fraud_types[0].value if self.fraud_types else "high_risk"
