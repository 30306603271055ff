"""
Payment DTOs (Pydantic v2) used at application boundaries.

Amounts are integers in minor units (2999 == 29.99 USD). Translation to a
provider's own representation happens only inside the adapters.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from domain.payment.entity import PaymentIntent, PaymentStatus, Refund, RefundStatus


def _normalize_currency(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    u = v.strip().upper()
    if not (3 <= len(u) <= 5) or not u.isalpha():
        raise ValueError("currency must be an alphabetic code of 3-5 letters")
    return u


class CreatePaymentRequest(BaseModel):
    """Purchase request handed to the orchestrator.

    ``amount`` is deliberately unconstrained here; the orchestrator rejects
    non-positive amounts and reports them as a failed result.
    """

    amount: int
    currency: str
    provider: str
    order_id: Optional[str] = None
    description: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    # amount is expressed in this currency and must be converted first
    source_currency: Optional[str] = None
    referral_cookie: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency", "source_currency")
    @classmethod
    def _upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_currency(v)

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: str) -> str:
        return (v or "").strip().lower()


class ProviderPaymentRequest(BaseModel):
    reference: str
    amount: int = Field(gt=0)
    currency: str
    idempotency_key: str
    description: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class ProviderPayment(BaseModel):
    external_id: str
    status: PaymentStatus
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    raw_status: Optional[str] = None


class ProviderRefundRequest(BaseModel):
    external_payment_id: str
    currency: str
    idempotency_key: str
    # None refunds the full remaining amount
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class ProviderRefund(BaseModel):
    external_refund_id: str
    status: RefundStatus
    raw_status: Optional[str] = None


class WebhookEventType(str, Enum):
    PAYMENT_PENDING = "payment.pending"
    PAYMENT_REQUIRES_ACTION = "payment.requires_action"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELED = "payment.canceled"
    REFUND_SUCCEEDED = "refund.succeeded"
    REFUND_FAILED = "refund.failed"
    IGNORED = "ignored"

    @property
    def is_payment(self) -> bool:
        return self.value.startswith("payment.")

    @property
    def is_refund(self) -> bool:
        return self.value.startswith("refund.")

    @property
    def payment_status(self) -> Optional[PaymentStatus]:
        return _PAYMENT_STATUS_BY_EVENT.get(self)

    @property
    def refund_status(self) -> Optional[RefundStatus]:
        return _REFUND_STATUS_BY_EVENT.get(self)


_PAYMENT_STATUS_BY_EVENT = {
    WebhookEventType.PAYMENT_PENDING: PaymentStatus.PENDING,
    WebhookEventType.PAYMENT_REQUIRES_ACTION: PaymentStatus.REQUIRES_ACTION,
    WebhookEventType.PAYMENT_SUCCEEDED: PaymentStatus.SUCCEEDED,
    WebhookEventType.PAYMENT_FAILED: PaymentStatus.FAILED,
    WebhookEventType.PAYMENT_CANCELED: PaymentStatus.CANCELED,
}
_REFUND_STATUS_BY_EVENT = {
    WebhookEventType.REFUND_SUCCEEDED: RefundStatus.SUCCEEDED,
    WebhookEventType.REFUND_FAILED: RefundStatus.FAILED,
}


class NormalizedEvent(BaseModel):
    """Provider-neutral webhook event produced by ``parse_webhook``."""

    provider: str
    type: WebhookEventType
    event_id: Optional[str] = None
    external_id: Optional[str] = None
    external_refund_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None
    raw_type: Optional[str] = None

    @model_validator(mode="after")
    def _require_identifiers(self) -> "NormalizedEvent":
        if self.type is WebhookEventType.IGNORED:
            return self
        if not self.external_id:
            raise ValueError(f"{self.type.value} event without payment id")
        if self.type.is_refund and not self.external_refund_id:
            raise ValueError(f"{self.type.value} event without refund id")
        return self

    @classmethod
    def ignored(cls, provider: str, raw_type: Optional[str] = None, event_id: Optional[str] = None) -> "NormalizedEvent":
        return cls(provider=provider, type=WebhookEventType.IGNORED, raw_type=raw_type, event_id=event_id)


class ErrorInfo(BaseModel):
    message: str
    code: int
    type: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class PaymentIntentDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: int
    currency: str
    provider: str
    status: PaymentStatus
    provider_payment_id: Optional[str] = None
    refunded_amount: int = 0
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    succeeded_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, intent: PaymentIntent) -> "PaymentIntentDTO":
        data = {name: getattr(intent, name) for name in cls.model_fields}
        data["provider"] = intent.provider.value
        return cls(**data)


class RefundDTO(BaseModel):
    id: str
    payment_intent_id: str
    amount: int
    currency: str
    status: RefundStatus
    provider_refund_id: Optional[str] = None
    reason: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, refund: Refund) -> "RefundDTO":
        return cls(**{name: getattr(refund, name) for name in cls.model_fields})


class PaymentResult(BaseModel):
    success: bool
    payment_intent: Optional[PaymentIntentDTO] = None
    error: Optional[ErrorInfo] = None


class PaymentDetails(BaseModel):
    payment_intent: PaymentIntentDTO
    refunds: list[RefundDTO] = Field(default_factory=list)


class RefundRequest(BaseModel):
    payment_intent_id: str
    # omitted amount refunds the full remaining balance
    amount: Optional[int] = None
    reason: Optional[str] = Field(default=None, max_length=255)


class RefundResult(BaseModel):
    success: bool
    refund: Optional[RefundDTO] = None
    payment_intent: Optional[PaymentIntentDTO] = None
    error: Optional[ErrorInfo] = None
