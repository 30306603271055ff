"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters for
stripe, yookassa and coingate.
"""
from __future__ import annotations

from typing import Mapping, Protocol, runtime_checkable

from application.dtos.payments import (
    NormalizedEvent,
    ProviderPayment,
    ProviderPaymentRequest,
    ProviderRefund,
    ProviderRefundRequest,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    ``parse_webhook`` raises ``SignatureVerificationError`` when the payload
    is not authentic and ``ValueError`` when it is malformed.
    ``signature_scheme`` names how authenticity is established so callers
    can reason about replay protection per provider.
    """

    provider: str
    signature_scheme: str

    def supports_currency(self, currency: str) -> bool: ...

    async def create_payment(self, req: ProviderPaymentRequest) -> ProviderPayment: ...

    async def create_refund(self, req: ProviderRefundRequest) -> ProviderRefund: ...

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> NormalizedEvent: ...

    async def aclose(self) -> None: ...
