"""推荐领域事件"""
from __future__ import annotations

from dataclasses import dataclass

from domain.common.events import DomainEvent


@dataclass(kw_only=True)
class ReferralCommissionAccrued(DomainEvent):
    name = "referral.commission_accrued"

    referral_link_id: str
    referrer_id: str
    tracking_id: str
    payment_intent_id: str
    purchase_amount: int
    commission_amount: int
    currency: str
    # flagged clicks still accrue but payout waits for manual review
    held_for_review: bool = False


@dataclass(kw_only=True)
class ReferralAttributionRequested(DomainEvent):
    """支付成功后待归因的请求，与状态变更同事务写入发件箱，由进程内处理器消费"""

    name = "referral.attribution_requested"

    payment_intent_id: str
