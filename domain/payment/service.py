"""
支付领域服务 - 状态机与退款规则

纯业务规则，不做 IO：
1. 根据当前状态与目标状态给出转换决策（应用 / 重复 / 过期 / 冲突）
2. 解析退款金额（未指定时退剩余全部），校验不超过可退金额
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from .entity import PaymentIntent, PaymentStatus
from .exceptions import PaymentNotRefundableException, RefundExceedsPaymentException
from domain.common.exceptions import DomainValidationException


class TransitionDecision(str, Enum):
    APPLY = "apply"
    DUPLICATE = "duplicate"    # 已处于目标状态，幂等无操作
    STALE = "stale"            # 乱序到达的旧通知，已越过该状态
    CONFLICT = "conflict"      # 与已有终态矛盾，需人工对账


S = PaymentStatus

# Transitions a provider notification may drive
WEBHOOK_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    S.PENDING: frozenset({S.REQUIRES_ACTION, S.SUCCEEDED, S.FAILED, S.CANCELED}),
    S.REQUIRES_ACTION: frozenset({S.PENDING, S.SUCCEEDED, S.FAILED, S.CANCELED}),
    S.FAILED: frozenset(),
    S.SUCCEEDED: frozenset(),
    S.PARTIALLY_REFUNDED: frozenset(),
    S.REFUNDED: frozenset(),
    S.CANCELED: frozenset(),
}

# Statuses that imply the payment already went through `succeeded`
_PAST_SUCCESS = frozenset({S.SUCCEEDED, S.PARTIALLY_REFUNDED, S.REFUNDED})
_IN_FLIGHT = frozenset({S.PENDING, S.REQUIRES_ACTION})


class PaymentStateMachine:
    """支付状态机：pending ↔ requires_action → succeeded → partially_refunded → refunded"""

    @staticmethod
    def plan(current: PaymentStatus, target: PaymentStatus) -> TransitionDecision:
        current = PaymentStatus(current)
        target = PaymentStatus(target)
        if current == target:
            return TransitionDecision.DUPLICATE
        if target in WEBHOOK_TRANSITIONS.get(current, frozenset()):
            return TransitionDecision.APPLY
        if target == S.SUCCEEDED and current in _PAST_SUCCESS:
            return TransitionDecision.STALE
        if target in _IN_FLIGHT and current not in _IN_FLIGHT:
            return TransitionDecision.STALE
        if target == S.CANCELED and current == S.FAILED:
            return TransitionDecision.STALE
        return TransitionDecision.CONFLICT


def resolve_refund_amount(intent: PaymentIntent, requested: Optional[int]) -> int:
    """
    解析退款金额

    业务规则：
    1. 只有成功或部分退款的支付才能退款
    2. 未指定金额时退剩余全部
    3. 退款金额必须大于0且不超过剩余可退金额
    """
    if not intent.can_refund():
        raise PaymentNotRefundableException(intent.status.value)
    if requested is None:
        return intent.refundable_amount
    if requested <= 0:
        raise DomainValidationException(
            f"Refund amount must be greater than 0: {requested}",
            field="amount",
        )
    if requested > intent.refundable_amount:
        raise RefundExceedsPaymentException(requested, intent.refundable_amount)
    return requested
