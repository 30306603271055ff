"""
支付领域实体 - 支付意图聚合根

金额统一以整数最小货币单位（如美分）表示，币种精度见 domain.currency。
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException


class PaymentProvider(str, Enum):
    """支付提供商"""
    STRIPE = "stripe"
    YOOKASSA = "yookassa"
    COINGATE = "coingate"


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"                        # 待支付
    REQUIRES_ACTION = "requires_action"        # 等待用户操作（跳转/3DS）
    SUCCEEDED = "succeeded"                    # 支付成功
    FAILED = "failed"                          # 支付失败
    CANCELED = "canceled"                      # 已取消/过期
    PARTIALLY_REFUNDED = "partially_refunded"  # 部分退款
    REFUNDED = "refunded"                      # 全额退款


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


REFUNDABLE_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED})


def new_id() -> str:
    return str(uuid.uuid4())


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _validate_currency(currency: str) -> None:
    if not currency or not (3 <= len(currency) <= 5) or not currency.isalpha():
        raise DomainValidationException(
            f"Invalid currency code: {currency}",
            field="currency",
        )


@dataclass
class PaymentIntent:
    """
    支付意图聚合根 - 管理一次收款请求的生命周期

    业务规则：
    1. 创建时金额必须大于0
    2. 状态转换遵循 PaymentStateMachine
    3. 已退款金额不能超过支付金额
    4. 金额创建后不可修改（仓储的更新操作从不写入 amount）
    """

    id: str
    amount: int
    currency: str
    provider: PaymentProvider
    status: PaymentStatus = PaymentStatus.PENDING
    provider_payment_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    refunded_amount: int = 0

    client_secret: Optional[str] = None   # 前端确认凭证（stripe）
    redirect_url: Optional[str] = None    # 跳转支付页（yookassa/coingate）
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    succeeded_at: Optional[datetime] = None

    def __post_init__(self):
        """初始化后验证"""
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise DomainValidationException("Amount must be an integer in minor units", field="amount")
        if self.amount <= 0:
            raise DomainValidationException(
                f"Amount must be greater than 0: {self.amount}",
                field="amount",
            )
        self.currency = (self.currency or "").upper()
        _validate_currency(self.currency)
        self.provider = PaymentProvider(self.provider)
        self.status = PaymentStatus(self.status)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.succeeded_at = _ensure_utc(self.succeeded_at)
        if self.metadata is None:
            self.metadata = {}

    @classmethod
    def open(
        cls,
        *,
        amount: int,
        currency: str,
        provider: PaymentProvider | str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        intent_id: Optional[str] = None,
    ) -> "PaymentIntent":
        now = datetime.now(timezone.utc)
        return cls(
            id=intent_id or new_id(),
            amount=amount,
            currency=currency,
            provider=PaymentProvider(provider),
            idempotency_key=idempotency_key,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

    @property
    def refundable_amount(self) -> int:
        """计算可退款金额"""
        return self.amount - self.refunded_amount

    def can_refund(self) -> bool:
        """检查是否可以退款"""
        return self.status in REFUNDABLE_STATUSES and self.refundable_amount > 0

    @property
    def referral_cookie(self) -> Optional[str]:
        value = (self.metadata or {}).get("referral_cookie")
        return str(value) if value else None


@dataclass
class Refund:
    """
    退款实体 - PaymentIntent 聚合的一部分

    业务规则：
    1. 退款金额必须大于0（未指定金额时已解析为剩余可退金额）
    2. 同一笔支付可以多次部分退款，未失败的退款总额不超过支付金额
    """

    id: str
    payment_intent_id: str
    provider: PaymentProvider
    amount: int
    currency: str
    status: RefundStatus = RefundStatus.PENDING
    provider_refund_id: Optional[str] = None
    reason: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """初始化后验证"""
        if self.amount <= 0:
            raise DomainValidationException(
                f"Refund amount must be greater than 0: {self.amount}",
                field="amount",
            )
        self.provider = PaymentProvider(self.provider)
        self.status = RefundStatus(self.status)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    @classmethod
    def open(cls, intent: PaymentIntent, amount: int, reason: Optional[str] = None) -> "Refund":
        now = datetime.now(timezone.utc)
        return cls(
            id=new_id(),
            payment_intent_id=intent.id,
            provider=intent.provider,
            amount=amount,
            currency=intent.currency,
            reason=reason,
            created_at=now,
            updated_at=now,
        )


@dataclass
class WebhookEventRecord:
    """
    Webhook 接收记录 - 每次回调一条，用于审计与对账

    无论验签失败、无法识别还是已处理，都会留下记录；
    accepted 表示是否已向渠道确认（False 时渠道会重投）。
    """

    id: str
    provider: str
    accepted: bool
    reason: str
    provider_event_id: Optional[str] = None
    event_type: Optional[str] = None
    raw_type: Optional[str] = None
    external_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    detail: Optional[str] = None
    received_at: Optional[datetime] = None

    def __post_init__(self):
        self.received_at = _ensure_utc(self.received_at)

    @classmethod
    def open(
        cls,
        provider: str,
        *,
        accepted: bool,
        reason: str,
        provider_event_id: Optional[str] = None,
        event_type: Optional[str] = None,
        raw_type: Optional[str] = None,
        external_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> "WebhookEventRecord":
        return cls(
            id=new_id(),
            provider=provider,
            accepted=accepted,
            reason=reason,
            provider_event_id=provider_event_id,
            event_type=event_type,
            raw_type=raw_type,
            external_id=external_id,
            payment_intent_id=payment_intent_id,
            detail=detail[:500] if detail else None,
            received_at=datetime.now(timezone.utc),
        )
