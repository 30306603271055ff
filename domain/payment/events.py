"""
Payment domain events.

Dataclass events record important payment lifecycle facts for downstream
handling (notifications, incentives). Domain remains free of infrastructure
imports.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from domain.common.events import DomainEvent


@dataclass(kw_only=True)
class PaymentEvent(DomainEvent):
    payment_intent_id: str
    provider: str
    provider_payment_id: Optional[str] = None


@dataclass(kw_only=True)
class PaymentSucceeded(PaymentEvent):
    name = "payment.succeeded"

    amount: int
    currency: str


@dataclass(kw_only=True)
class PaymentFailed(PaymentEvent):
    name = "payment.failed"

    reason: Optional[str] = None


@dataclass(kw_only=True)
class PaymentCanceled(PaymentEvent):
    name = "payment.canceled"


@dataclass(kw_only=True)
class RefundProcessed(PaymentEvent):
    name = "refund.processed"

    refund_id: str
    provider_refund_id: Optional[str] = None
    amount: int
    currency: str


@dataclass(kw_only=True)
class ReconciliationRequired(PaymentEvent):
    """Conflicting provider notification that was not applied."""

    name = "payment.reconciliation_required"

    current_status: str
    reported_status: str
    provider_event_id: Optional[str] = None
