"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (60xxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004
    EXCHANGE_RATE_NOT_FOUND = 60005
    INCONSISTENT_STATE = 60006

    # Payment lifecycle errors (61xxx)
    PAYMENT_NOT_FOUND = 61000
    PAYMENT_NOT_REFUNDABLE = 61001
    REFUND_EXCEEDS_PAYMENT = 61002
    UNSUPPORTED_PROVIDER = 61003
    UNSUPPORTED_CURRENCY = 61004
    PAYMENT_ALREADY_EXISTS = 61005
    IDEMPOTENCY_KEY_REUSED = 61006


# Provider status -> internal PaymentStatus value
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "requires_payment_method": "pending",
        "requires_confirmation": "pending",
        "requires_action": "requires_action",
        "processing": "pending",
        "requires_capture": "pending",
        "succeeded": "succeeded",
        "canceled": "canceled",
    },
    "yookassa": {
        "pending": "requires_action",
        "waiting_for_capture": "pending",
        "succeeded": "succeeded",
        "canceled": "canceled",
    },
    "coingate": {
        "new": "requires_action",
        "pending": "pending",
        "confirming": "pending",
        "paid": "succeeded",
        "invalid": "failed",
        "expired": "canceled",
        "canceled": "canceled",
    },
}

# Provider refund status -> internal RefundStatus value
PROVIDER_REFUND_STATUS_TO_INTERNAL = {
    "stripe": {
        "pending": "pending",
        "requires_action": "pending",
        "succeeded": "succeeded",
        "failed": "failed",
        "canceled": "failed",
    },
    "yookassa": {
        "pending": "pending",
        "succeeded": "succeeded",
        "canceled": "failed",
    },
}
