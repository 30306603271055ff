"""
Payment exceptions mapped to unified BusinessException variants.

Adapters raise ProviderError / SignatureVerificationError; the orchestrator
recovers validation and provider errors at its boundary and escalates
InconsistentStateError.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import (
    BusinessException,
    DomainValidationException,
    ResourceNotFoundException,
)
from shared.codes.payment_codes import PaymentCode


class ProviderError(BusinessException):
    """Remote provider rejected or failed to process a request.

    ``retryable`` marks transient failures (timeouts, 5xx, rate limits) that
    may be retried with the same idempotency key.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        retryable: bool = False,
        provider_code: str | None = None,
        details: Optional[dict] = None,
    ):
        self.provider = provider
        self.retryable = retryable
        self.provider_code = provider_code
        full_details = {"provider": provider, "provider_code": provider_code, "retryable": retryable}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.PROVIDER_RECOVERABLE if retryable else PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="ProviderError",
            details=full_details,
        )


class SignatureVerificationError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        self.provider = provider
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="SignatureVerificationError",
            details=full_details,
        )


class ExchangeRateNotFoundError(BusinessException):
    def __init__(self, base_currency: str, quote_currency: str):
        super().__init__(
            code=PaymentCode.EXCHANGE_RATE_NOT_FOUND,
            message=f"No usable exchange rate for {base_currency}->{quote_currency}",
            error_type="ExchangeRateNotFoundError",
            details={"from": base_currency, "to": quote_currency},
        )


class InconsistentStateError(BusinessException):
    """Local state diverged from the provider and needs manual reconciliation."""

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.INCONSISTENT_STATE,
            message=message,
            error_type="InconsistentStateError",
            details=details,
        )


class PaymentNotFoundException(ResourceNotFoundException):
    def __init__(self, identifier: str):
        super().__init__(
            f"Payment intent not found: {identifier}",
            code=PaymentCode.PAYMENT_NOT_FOUND,
            error_type="PaymentNotFound",
            details={"payment_intent_id": identifier},
        )


class PaymentAlreadyExistsException(BusinessException):
    """Another intent already holds this idempotency key."""

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(
            code=PaymentCode.PAYMENT_ALREADY_EXISTS,
            message="Payment intent already exists for idempotency key",
            error_type="PaymentAlreadyExists",
            details={"idempotency_key": idempotency_key},
        )


class PaymentNotRefundableException(DomainValidationException):
    def __init__(self, status: str):
        super().__init__(
            f"Payment in status {status} cannot be refunded",
            field="payment_intent_id",
            details={"status": status},
            code=PaymentCode.PAYMENT_NOT_REFUNDABLE,
            error_type="PaymentNotRefundable",
        )


class RefundExceedsPaymentException(DomainValidationException):
    def __init__(self, refund_amount: int, remaining: int):
        super().__init__(
            f"Refund amount {refund_amount} exceeds remaining refundable amount {remaining}",
            field="amount",
            details={"amount": refund_amount, "remaining": remaining},
            code=PaymentCode.REFUND_EXCEEDS_PAYMENT,
            error_type="RefundExceedsPayment",
        )
