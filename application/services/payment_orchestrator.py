"""
Application service orchestrating payment use-cases.

Depends only on the PaymentGateway port, the unit of work and DTOs. Gateway
implementations are built by infrastructure and injected from the
composition root (API/tasks), keeping dependencies one-way.

Provider calls are retried here (never inside adapters) and always reuse the
same idempotency key, so a retried create/refund cannot charge twice.
"""
from __future__ import annotations

import hashlib
import uuid
from typing import Any, Awaitable, Callable, Mapping, Optional

from application.dtos.payments import (
    CreatePaymentRequest,
    ErrorInfo,
    PaymentDetails,
    PaymentIntentDTO,
    PaymentResult,
    ProviderPaymentRequest,
    ProviderRefundRequest,
    RefundDTO,
    RefundRequest,
    RefundResult,
)
from application.ports.payment_gateway import PaymentGateway
from application.services.currency_service import CurrencyConverter
from application.services.webhook_reconciler import WebhookReconciler
from application.utils.retry import call_with_retry
from core.logging_config import get_logger
from core.settings import PaymentRetry, payment_settings
from domain.common.events import DomainEvent
from domain.common.exceptions import BusinessException, DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import PaymentIntent, PaymentStatus, Refund, RefundStatus
from domain.payment.events import RefundProcessed
from domain.payment.exceptions import (
    ExchangeRateNotFoundError,
    InconsistentStateError,
    PaymentAlreadyExistsException,
    PaymentNotFoundException,
    ProviderError,
)
from domain.payment.service import resolve_refund_amount
from shared.codes.payment_codes import PaymentCode


logger = get_logger(__name__)

# statuses a freshly created intent may be stored with
_INITIAL_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.REQUIRES_ACTION})
_INTENT_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "marketplace-payments/payment-intent")


def derive_idempotency_key(req: CreatePaymentRequest) -> str:
    """Stable key from business identifiers; random when no order id is known."""
    if req.order_id:
        base = f"{req.provider}|{req.order_id}|{req.amount}|{req.currency}"
        return hashlib.sha256(base.encode("utf-8")).hexdigest()
    return str(uuid.uuid4())


def _intent_id_for(idempotency_key: str) -> str:
    # same key -> same local reference, so provider-side idempotency holds across requests
    return str(uuid.uuid5(_INTENT_ID_NAMESPACE, idempotency_key))


def _error_info(exc: BusinessException) -> ErrorInfo:
    return ErrorInfo(message=exc.message, code=int(exc.code), type=exc.error_type, details=exc.details)


def _check_key_reuse(existing: PaymentIntent, req: CreatePaymentRequest, idempotency_key: str) -> None:
    """Reject a replayed idempotency key whose payment parameters differ from the stored intent."""
    metadata = existing.metadata or {}
    # converted intents store the caller's original amount/currency in metadata
    stored = (
        existing.provider.value,
        existing.currency,
        int(metadata.get("source_amount", existing.amount)),
        str(metadata.get("source_currency", existing.currency)).upper(),
    )
    requested = (req.provider, req.currency, req.amount, req.source_currency or req.currency)
    if stored == requested:
        return
    logger.warning(
        "idempotency_key_reused",
        payment_intent_id=existing.id,
        idempotency_key=idempotency_key,
        stored=list(stored),
        requested=list(requested),
    )
    raise DomainValidationException(
        "Idempotency key was already used for a different payment",
        field="idempotency_key",
        code=PaymentCode.IDEMPOTENCY_KEY_REUSED,
        error_type="IdempotencyKeyReused",
        details={"payment_intent_id": existing.id},
    )


class PaymentOrchestrator:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateways: Mapping[str, PaymentGateway],
        *,
        currency_converter: Optional[CurrencyConverter] = None,
        reconciler: Optional[WebhookReconciler] = None,
        event_dispatcher=None,
        retry_policy: Optional[PaymentRetry] = None,
        retry_sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._converter = currency_converter
        self._dispatcher = event_dispatcher
        self._retry_policy = retry_policy or payment_settings.retry
        self._retry_sleep = retry_sleep
        self._reconciler = reconciler or WebhookReconciler(
            uow_factory, gateways, event_dispatcher=event_dispatcher
        )

    def _gateway(self, provider: str) -> PaymentGateway:
        gateway = self._gateways.get((provider or "").lower())
        if gateway is None:
            raise DomainValidationException(
                f"Payment provider not available: {provider}",
                field="provider",
                code=PaymentCode.UNSUPPORTED_PROVIDER,
                error_type="UnsupportedProvider",
            )
        return gateway

    async def create_payment(self, req: CreatePaymentRequest) -> PaymentResult:
        """
        Create a payment intent with the provider and persist it.

        Validation, provider and exchange-rate failures are reported as
        ``PaymentResult(success=False)``; ``InconsistentStateError`` propagates.
        """
        try:
            return await self._create_payment(req)
        except (DomainValidationException, ProviderError, ExchangeRateNotFoundError) as exc:
            logger.warning(
                "payment_create_failed",
                provider=req.provider,
                order_id=req.order_id,
                error_type=exc.error_type,
                error_code=int(exc.code),
                error=exc.message,
            )
            return PaymentResult(success=False, error=_error_info(exc))

    async def _create_payment(self, req: CreatePaymentRequest) -> PaymentResult:
        if req.amount <= 0:
            raise DomainValidationException(f"Amount must be greater than 0: {req.amount}", field="amount")
        gateway = self._gateway(req.provider)
        if not gateway.supports_currency(req.currency):
            raise DomainValidationException(
                f"Currency {req.currency} is not supported by {req.provider}",
                field="currency",
                code=PaymentCode.UNSUPPORTED_CURRENCY,
                error_type="UnsupportedCurrency",
            )

        idempotency_key = req.idempotency_key or derive_idempotency_key(req)
        async with self._uow_factory(readonly=True) as uow:
            existing = await uow.payment_repository.get_by_idempotency_key(idempotency_key)
        if existing is not None:
            _check_key_reuse(existing, req, idempotency_key)
            logger.info("payment_create_idempotent_hit", payment_intent_id=existing.id, idempotency_key=idempotency_key)
            return PaymentResult(success=True, payment_intent=PaymentIntentDTO.from_entity(existing))

        amount = req.amount
        metadata: dict[str, Any] = dict(req.metadata)
        if req.order_id:
            metadata["order_id"] = req.order_id
        if req.source_currency and req.source_currency != req.currency:
            if self._converter is None:
                raise ExchangeRateNotFoundError(req.source_currency, req.currency)
            conversion = await self._converter.convert(req.amount, req.source_currency, req.currency)
            if conversion.amount <= 0:
                raise DomainValidationException(
                    f"Converted amount must be greater than 0: {conversion.amount}",
                    field="amount",
                )
            amount = conversion.amount
            metadata.update(
                source_amount=req.amount,
                source_currency=req.source_currency,
                exchange_rate=str(conversion.rate),
            )
        if req.referral_cookie:
            metadata["referral_cookie"] = req.referral_cookie

        intent = PaymentIntent.open(
            amount=amount,
            currency=req.currency,
            provider=req.provider,
            idempotency_key=idempotency_key,
            metadata=metadata,
            intent_id=_intent_id_for(idempotency_key),
        )
        logger.info(
            "payment_create_request",
            payment_intent_id=intent.id,
            provider=req.provider,
            order_id=req.order_id,
            amount=amount,
            currency=req.currency,
            idempotency_key=idempotency_key,
        )

        provider_request = ProviderPaymentRequest(
            reference=intent.id,
            amount=amount,
            currency=intent.currency,
            idempotency_key=idempotency_key,
            description=req.description,
            # the referral cookie is a bearer secret and never leaves the system
            metadata={k: str(v) for k, v in metadata.items() if k != "referral_cookie" and v is not None},
        )
        created = await call_with_retry(
            lambda: gateway.create_payment(provider_request),
            self._retry_policy,
            operation="create_payment",
            sleep=self._retry_sleep,
        )

        intent.provider_payment_id = created.external_id
        intent.status = created.status if created.status in _INITIAL_STATUSES else PaymentStatus.PENDING
        intent.client_secret = created.client_secret
        intent.redirect_url = created.redirect_url

        try:
            async with self._uow_factory() as uow:
                await uow.payment_repository.add(intent)
        except PaymentAlreadyExistsException:
            async with self._uow_factory(readonly=True) as uow:
                winner = await uow.payment_repository.get_by_idempotency_key(idempotency_key)
            if winner is None:
                self._log_persist_failure(intent, "unique conflict without a matching idempotency key")
                raise InconsistentStateError(
                    "Payment created at provider but could not be stored",
                    details={"provider": req.provider, "provider_payment_id": created.external_id},
                )
            _check_key_reuse(winner, req, idempotency_key)
            logger.info("payment_create_race_lost", payment_intent_id=winner.id, idempotency_key=idempotency_key)
            return PaymentResult(success=True, payment_intent=PaymentIntentDTO.from_entity(winner))
        except Exception as exc:
            self._log_persist_failure(intent, str(exc))
            raise InconsistentStateError(
                "Payment created at provider but could not be stored",
                details={"provider": req.provider, "provider_payment_id": created.external_id},
            ) from exc

        logger.info(
            "payment_create_response",
            payment_intent_id=intent.id,
            provider=req.provider,
            provider_payment_id=intent.provider_payment_id,
            status=intent.status.value,
        )
        return PaymentResult(success=True, payment_intent=PaymentIntentDTO.from_entity(intent))

    def _log_persist_failure(self, intent: PaymentIntent, error: str) -> None:
        logger.critical(
            "payment_persist_failed",
            payment_intent_id=intent.id,
            provider=intent.provider.value,
            provider_payment_id=intent.provider_payment_id,
            idempotency_key=intent.idempotency_key,
            error=error,
        )

    async def process_refund(self, req: RefundRequest) -> RefundResult:
        """
        Refund a succeeded payment.

        The amount is reserved on the intent with a conditional update before
        the provider is called; a provider failure releases it again.

        Validation and provider failures are reported as
        ``RefundResult(success=False)``; a missing payment raises
        ``PaymentNotFoundException``.
        """
        try:
            return await self._process_refund(req)
        except DomainValidationException as exc:
            logger.warning(
                "refund_rejected",
                payment_intent_id=req.payment_intent_id,
                amount=req.amount,
                error_type=exc.error_type,
                error_code=int(exc.code),
                error=exc.message,
            )
            return RefundResult(success=False, error=_error_info(exc))

    async def _process_refund(self, req: RefundRequest) -> RefundResult:
        async with self._uow_factory() as uow:
            intent = await uow.payment_repository.get_by_id(req.payment_intent_id)
            if intent is None:
                raise PaymentNotFoundException(req.payment_intent_id)
            amount = resolve_refund_amount(intent, req.amount)
            gateway = self._gateway(intent.provider.value)

            reserved = await uow.payment_repository.reserve_refund(intent.id, amount)
            if reserved is None:
                # lost a race with a concurrent refund; re-validate against fresh state
                current = await uow.payment_repository.get_by_id(intent.id)
                if current is None:
                    raise PaymentNotFoundException(intent.id)
                resolve_refund_amount(current, amount)
                raise InconsistentStateError(
                    "Refund reservation failed", details={"payment_intent_id": intent.id, "amount": amount}
                )
            refund = Refund.open(reserved, amount, req.reason)
            await uow.refund_repository.add(refund)

        logger.info(
            "refund_request",
            refund_id=refund.id,
            payment_intent_id=intent.id,
            provider=intent.provider.value,
            amount=amount,
        )
        provider_request = ProviderRefundRequest(
            external_payment_id=intent.provider_payment_id or "",
            currency=intent.currency,
            idempotency_key=f"refund:{refund.id}",
            amount=amount,
            reason=req.reason,
            metadata={"refund_id": refund.id, "payment_intent_id": intent.id},
        )
        try:
            created = await call_with_retry(
                lambda: gateway.create_refund(provider_request),
                self._retry_policy,
                operation="create_refund",
                sleep=self._retry_sleep,
            )
        except ProviderError as exc:
            released = await self._fail_refund(refund, exc.message)
            logger.warning(
                "refund_provider_failed",
                refund_id=refund.id,
                payment_intent_id=intent.id,
                provider_code=exc.provider_code,
                retryable=exc.retryable,
            )
            refund.status = RefundStatus.FAILED
            refund.failure_reason = exc.message
            return RefundResult(
                success=False,
                refund=RefundDTO.from_entity(refund),
                payment_intent=PaymentIntentDTO.from_entity(released) if released else None,
                error=_error_info(exc),
            )

        recorded: list[DomainEvent] = []
        async with self._uow_factory() as uow:
            await uow.refund_repository.attach_provider_refund(refund.id, created.external_refund_id)
            refund.provider_refund_id = created.external_refund_id
            if created.status is RefundStatus.SUCCEEDED:
                if await uow.refund_repository.compare_and_set_status(
                    refund.id, [RefundStatus.PENDING], RefundStatus.SUCCEEDED
                ):
                    processed = RefundProcessed(
                        payment_intent_id=intent.id,
                        provider=intent.provider.value,
                        provider_payment_id=intent.provider_payment_id,
                        refund_id=refund.id,
                        provider_refund_id=created.external_refund_id,
                        amount=amount,
                        currency=intent.currency,
                    )
                    await uow.outbox_repository.add(processed)
                    recorded.append(processed)
                refund.status = RefundStatus.SUCCEEDED
            elif created.status is RefundStatus.FAILED:
                if await uow.refund_repository.compare_and_set_status(
                    refund.id, [RefundStatus.PENDING], RefundStatus.FAILED, failure_reason=created.raw_status
                ):
                    await uow.payment_repository.release_refund(intent.id, amount)
                refund.status = RefundStatus.FAILED
            current = await uow.payment_repository.get_by_id(intent.id)

        if recorded and self._dispatcher is not None:
            await self._dispatcher.dispatch(recorded)

        logger.info(
            "refund_response",
            refund_id=refund.id,
            provider_refund_id=created.external_refund_id,
            status=refund.status.value,
            payment_status=current.status.value if current else None,
        )
        return RefundResult(
            success=refund.status is not RefundStatus.FAILED,
            refund=RefundDTO.from_entity(refund),
            payment_intent=PaymentIntentDTO.from_entity(current) if current else None,
        )

    async def _fail_refund(self, refund: Refund, reason: str) -> Optional[PaymentIntent]:
        async with self._uow_factory() as uow:
            if await uow.refund_repository.compare_and_set_status(
                refund.id, [RefundStatus.PENDING], RefundStatus.FAILED, failure_reason=reason
            ):
                return await uow.payment_repository.release_refund(refund.payment_intent_id, refund.amount)
            return await uow.payment_repository.get_by_id(refund.payment_intent_id)

    async def handle_webhook(self, provider: str, headers: Mapping[str, str], body: bytes) -> bool:
        return await self._reconciler.handle(provider, headers, body)

    async def get_payment(self, intent_id: str) -> PaymentDetails:
        async with self._uow_factory(readonly=True) as uow:
            intent = await uow.payment_repository.get_by_id(intent_id)
            if intent is None:
                raise PaymentNotFoundException(intent_id)
            refunds = await uow.refund_repository.list_by_payment(intent_id)
        return PaymentDetails(
            payment_intent=PaymentIntentDTO.from_entity(intent),
            refunds=[RefundDTO.from_entity(r) for r in refunds],
        )
