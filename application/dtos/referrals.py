"""
Referral DTOs (Pydantic v2).
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from domain.fraud.entity import FraudAnalysisResult
from domain.referral.entity import ReferralLink, ReferralStats, RewardType


class CreateReferralLinkRequest(BaseModel):
    referrer_id: str = Field(min_length=1, max_length=64)
    product_id: Optional[str] = Field(default=None, max_length=64)
    shop_id: Optional[str] = Field(default=None, max_length=64)
    reward_type: RewardType = RewardType.PERCENTAGE
    reward_value: Decimal = Field(gt=0)
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _target_required(self) -> "CreateReferralLinkRequest":
        if not self.product_id and not self.shop_id:
            raise ValueError("product_id or shop_id is required")
        if self.reward_type is RewardType.PERCENTAGE and self.reward_value > 100:
            raise ValueError("percentage reward cannot exceed 100")
        return self


class ReferralLinkDTO(BaseModel):
    id: str
    referrer_id: str
    referral_code: str
    product_id: Optional[str] = None
    shop_id: Optional[str] = None
    reward_type: RewardType
    reward_value: Decimal
    is_active: bool
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, link: ReferralLink) -> "ReferralLinkDTO":
        return cls(**{name: getattr(link, name) for name in cls.model_fields})


class ReferralStatsDTO(BaseModel):
    referral_code: str
    click_count: int = 0
    purchase_count: int = 0
    total_earned: int = 0
    conversion_rate: float = 0.0

    @classmethod
    def from_entity(cls, link: ReferralLink, stats: Optional[ReferralStats]) -> "ReferralStatsDTO":
        stats = stats or ReferralStats(referral_link_id=link.id)
        rate = stats.purchase_count / stats.click_count if stats.click_count else 0.0
        return cls(
            referral_code=link.referral_code,
            click_count=stats.click_count,
            purchase_count=stats.purchase_count,
            total_earned=stats.total_earned,
            conversion_rate=round(rate, 4),
        )


class TrackClickRequest(BaseModel):
    referral_code: str = Field(min_length=1, max_length=32)
    landing_page: Optional[str] = Field(default=None, max_length=2048)
    referrer_url: Optional[str] = Field(default=None, max_length=2048)


class ClickInfo(BaseModel):
    """Request metadata collected by the API layer."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer_url: Optional[str] = None
    landing_page: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None


class FraudAnalysisDTO(BaseModel):
    risk_score: int
    fraud_types: list[str] = Field(default_factory=list)
    should_block: bool = False
    should_flag: bool = False
    recommendations: list[str] = Field(default_factory=list)
    unavailable_signals: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: FraudAnalysisResult) -> "FraudAnalysisDTO":
        return cls(
            risk_score=result.risk_score,
            fraud_types=[t.value for t in result.fraud_types],
            should_block=result.should_block,
            should_flag=result.should_flag,
            recommendations=list(result.recommendations),
            unavailable_signals=[s.value for s in result.unavailable_signals],
        )


class TrackingResult(BaseModel):
    success: bool
    blocked: bool = False
    reason: Optional[str] = None
    tracking_id: Optional[str] = None
    cookie_value: Optional[str] = None
    expires_at: Optional[datetime] = None
    fraud_analysis: Optional[FraudAnalysisDTO] = None


class AttributionResult(BaseModel):
    tracking_id: str
    referral_link_id: str
    commission_amount: int
    currency: str
    held_for_review: bool = False
    details: dict[str, Any] = Field(default_factory=dict)
