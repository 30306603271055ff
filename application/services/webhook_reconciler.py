"""
Webhook reconciliation.

Verifies and normalizes provider notifications through the adapter, then
applies them to local state with compare-and-set updates so that duplicate,
out-of-order and concurrent deliveries are harmless:

- ``apply``: CAS ``status == current``; only the winning writer records events
- ``duplicate`` / ``stale``: acknowledged, no change
- ``conflict``: never overrides local state; logged at critical and recorded
  as ``payment.reconciliation_required`` for manual follow-up

``handle`` returns ``False`` when the provider should redeliver (rejected
signature, malformed payload, unknown intent/refund) and ``True`` otherwise.

Every delivery leaves a ``webhook_events`` receipt (provider, event id, type,
accepted flag and outcome). Receipts for handled events are written in the
same transaction as the state change; rejections are stored best-effort.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from application.dtos.payments import NormalizedEvent, WebhookEventType
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from domain.common.events import DomainEvent
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import PaymentIntent, PaymentStatus, RefundStatus, WebhookEventRecord
from domain.payment.events import (
    PaymentCanceled,
    PaymentFailed,
    PaymentSucceeded,
    ReconciliationRequired,
    RefundProcessed,
)
from domain.payment.exceptions import InconsistentStateError, SignatureVerificationError
from domain.payment.service import PaymentStateMachine, TransitionDecision
from domain.referral.events import ReferralAttributionRequested
from domain.referral.exceptions import AttributionMiss


logger = get_logger(__name__)

# a lost CAS race re-reads and re-plans at most this many times
MAX_PLAN_ATTEMPTS = 3


class WebhookReconciler:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateways: Mapping[str, PaymentGateway],
        *,
        referral_tracker=None,
        event_dispatcher=None,
    ):
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._tracker = referral_tracker
        self._dispatcher = event_dispatcher
        if referral_tracker is not None and event_dispatcher is not None:
            event_dispatcher.register(ReferralAttributionRequested.name, self.handle_attribution_request)

    async def handle(self, provider: str, headers: Mapping[str, str], body: bytes) -> bool:
        provider = (provider or "").lower()
        gateway = self._gateways.get(provider)
        if gateway is None:
            logger.warning("webhook_rejected", provider=provider, reason="unknown_provider")
            await self._audit(WebhookEventRecord.open(provider[:20] or "unknown", accepted=False, reason="unknown_provider"))
            return False
        try:
            event = gateway.parse_webhook(headers, body)
        except SignatureVerificationError as exc:
            logger.warning(
                "webhook_rejected",
                provider=provider,
                reason="signature",
                signature_scheme=getattr(gateway, "signature_scheme", None),
                error=exc.message,
            )
            await self._audit(WebhookEventRecord.open(provider, accepted=False, reason="signature", detail=exc.message))
            return False
        except ValueError as exc:
            # pydantic ValidationError is a ValueError as well
            logger.warning("webhook_rejected", provider=provider, reason="malformed", error=str(exc))
            await self._audit(WebhookEventRecord.open(provider, accepted=False, reason="malformed", detail=str(exc)))
            return False

        logger.info(
            "webhook_received",
            provider=provider,
            event_type=event.type.value,
            raw_type=event.raw_type,
            provider_event_id=event.event_id,
            external_id=event.external_id,
        )
        if event.type is WebhookEventType.IGNORED:
            await self._audit(_receipt(event, accepted=True, reason="ignored"))
            return True
        if event.type.is_payment:
            return await self._apply_payment_event(event)
        return await self._apply_refund_event(event)

    async def _apply_payment_event(self, event: NormalizedEvent) -> bool:
        target = event.type.payment_status
        recorded: list[DomainEvent] = []

        async with self._uow_factory() as uow:
            intent = await uow.payment_repository.get_by_provider_payment_id(event.provider, event.external_id)
            if intent is None:
                # create_payment may not have committed yet; ask for redelivery
                logger.warning(
                    "webhook_unknown_payment",
                    provider=event.provider,
                    external_id=event.external_id,
                    event_type=event.type.value,
                )
                await uow.webhook_event_repository.add(_receipt(event, accepted=False, reason="unknown_payment"))
                return False

            for _ in range(MAX_PLAN_ATTEMPTS):
                decision = PaymentStateMachine.plan(intent.status, target)
                if decision is TransitionDecision.APPLY:
                    now = datetime.now(timezone.utc)
                    won = await uow.payment_repository.compare_and_set_status(
                        intent.id,
                        intent.status,
                        target,
                        failure_reason=event.failure_reason if target in (PaymentStatus.FAILED, PaymentStatus.CANCELED) else None,
                        succeeded_at=now if target is PaymentStatus.SUCCEEDED else None,
                    )
                    if not won:
                        intent = await uow.payment_repository.get_by_id(intent.id)
                        continue
                    self._check_amount(intent, event)
                    logger.info(
                        "payment_status_changed",
                        payment_intent_id=intent.id,
                        from_status=intent.status.value,
                        to_status=target.value,
                        provider=event.provider,
                    )
                    domain_event = _payment_event(intent, target, event)
                    if domain_event is not None:
                        await uow.outbox_repository.add(domain_event)
                        recorded.append(domain_event)
                    if target is PaymentStatus.SUCCEEDED and intent.referral_cookie and self._tracker is not None:
                        # committed together with the status change
                        request = ReferralAttributionRequested(payment_intent_id=intent.id)
                        await uow.outbox_repository.add(request)
                        recorded.append(request)
                    break

                if decision is TransitionDecision.CONFLICT:
                    error = InconsistentStateError(
                        f"Provider reported {target.value} for a {intent.status.value} payment",
                        details={"payment_intent_id": intent.id, "provider": event.provider},
                    )
                    logger.critical(
                        "payment_state_conflict",
                        payment_intent_id=intent.id,
                        provider=event.provider,
                        current_status=intent.status.value,
                        reported_status=target.value,
                        provider_event_id=event.event_id,
                        error_code=int(error.code),
                        error=error.message,
                    )
                    conflict = ReconciliationRequired(
                        payment_intent_id=intent.id,
                        provider=event.provider,
                        provider_payment_id=intent.provider_payment_id,
                        current_status=intent.status.value,
                        reported_status=target.value,
                        provider_event_id=event.event_id,
                    )
                    await uow.outbox_repository.add(conflict)
                    recorded.append(conflict)
                    break

                logger.info(
                    "webhook_noop",
                    payment_intent_id=intent.id,
                    decision=decision.value,
                    current_status=intent.status.value,
                    reported_status=target.value,
                )
                break
            else:
                logger.error("payment_transition_contended", payment_intent_id=intent.id, target=target.value)
                await uow.webhook_event_repository.add(
                    _receipt(event, accepted=False, reason="contended", payment_intent_id=intent.id)
                )
                return False

            await uow.webhook_event_repository.add(
                _receipt(event, accepted=True, reason=decision.value, payment_intent_id=intent.id)
            )

        await self._dispatch(recorded)
        return True

    async def _apply_refund_event(self, event: NormalizedEvent) -> bool:
        target = event.type.refund_status
        recorded: list[DomainEvent] = []

        async with self._uow_factory() as uow:
            refund = await uow.refund_repository.get_by_provider_refund_id(event.provider, event.external_refund_id)
            if refund is None:
                logger.warning(
                    "webhook_unknown_refund",
                    provider=event.provider,
                    external_refund_id=event.external_refund_id,
                )
                await uow.webhook_event_repository.add(_receipt(event, accepted=False, reason="unknown_refund"))
                return False

            decision = TransitionDecision.DUPLICATE
            if target is RefundStatus.SUCCEEDED:
                won = await uow.refund_repository.compare_and_set_status(
                    refund.id, [RefundStatus.PENDING], RefundStatus.SUCCEEDED
                )
                if won:
                    decision = TransitionDecision.APPLY
                    processed = RefundProcessed(
                        payment_intent_id=refund.payment_intent_id,
                        provider=refund.provider.value,
                        provider_payment_id=event.external_id,
                        refund_id=refund.id,
                        provider_refund_id=refund.provider_refund_id,
                        amount=refund.amount,
                        currency=refund.currency,
                    )
                    await uow.outbox_repository.add(processed)
                    recorded.append(processed)
                    logger.info("refund_succeeded", refund_id=refund.id, payment_intent_id=refund.payment_intent_id)
                elif refund.status is RefundStatus.FAILED:
                    decision = TransitionDecision.CONFLICT
                    logger.critical(
                        "refund_state_conflict",
                        refund_id=refund.id,
                        current_status=refund.status.value,
                        reported_status=target.value,
                    )
                else:
                    logger.info("webhook_noop", refund_id=refund.id, decision=TransitionDecision.DUPLICATE.value)
            else:
                won = await uow.refund_repository.compare_and_set_status(
                    refund.id,
                    [RefundStatus.PENDING, RefundStatus.SUCCEEDED],
                    RefundStatus.FAILED,
                    failure_reason=event.failure_reason,
                )
                if won:
                    decision = TransitionDecision.APPLY
                    await uow.payment_repository.release_refund(refund.payment_intent_id, refund.amount)
                    logger.warning(
                        "refund_failed",
                        refund_id=refund.id,
                        payment_intent_id=refund.payment_intent_id,
                        previous_status=refund.status.value,
                        reason=event.failure_reason,
                    )
                else:
                    logger.info("webhook_noop", refund_id=refund.id, decision=TransitionDecision.DUPLICATE.value)

            await uow.webhook_event_repository.add(
                _receipt(event, accepted=True, reason=decision.value, payment_intent_id=refund.payment_intent_id)
            )

        await self._dispatch(recorded)
        return True

    async def _audit(self, record: WebhookEventRecord) -> None:
        """Store a receipt that has no state change to ride along with."""
        try:
            async with self._uow_factory() as uow:
                await uow.webhook_event_repository.add(record)
        except Exception as exc:
            # the acknowledgement decision stands without the receipt
            logger.error(
                "webhook_audit_failed",
                provider=record.provider,
                reason=record.reason,
                provider_event_id=record.provider_event_id,
                error=str(exc),
            )

    def _check_amount(self, intent: PaymentIntent, event: NormalizedEvent) -> None:
        if event.amount is None or event.currency is None:
            return
        if event.amount != intent.amount or event.currency.upper() != intent.currency:
            logger.warning(
                "webhook_amount_mismatch",
                payment_intent_id=intent.id,
                expected_amount=intent.amount,
                expected_currency=intent.currency,
                reported_amount=event.amount,
                reported_currency=event.currency,
            )

    async def _dispatch(self, events: list[DomainEvent]) -> None:
        if not events:
            return
        if self._dispatcher is not None:
            await self._dispatcher.dispatch(events)
            return
        for event in events:
            if isinstance(event, ReferralAttributionRequested):
                try:
                    await self.handle_attribution_request(event.to_payload())
                except Exception:
                    logger.exception("referral_attribution_failed", payment_intent_id=event.payment_intent_id)

    async def handle_attribution_request(self, payload: Mapping[str, Any]) -> None:
        """
        Attribute a succeeded payment to its referral click.

        Runs from the outbox, so it may see the same request more than once;
        the tracker's single conditional claim turns repeats into
        ``AttributionMiss(already_attributed)``. Misses are final. Any other
        error propagates and leaves the request pending for the next flush.
        The payment itself is never affected.
        """
        intent_id = str(payload.get("payment_intent_id") or "")
        async with self._uow_factory(readonly=True) as uow:
            intent = await uow.payment_repository.get_by_id(intent_id)
        if intent is None or not intent.referral_cookie or self._tracker is None:
            logger.warning("referral_attribution_skipped", payment_intent_id=intent_id)
            return
        try:
            await self._tracker.attribute_purchase(intent.referral_cookie, intent.amount, intent.currency, intent.id)
        except AttributionMiss as miss:
            logger.info("referral_attribution_miss", payment_intent_id=intent.id, reason=miss.reason)
        except Exception as exc:
            logger.warning("referral_attribution_failed", payment_intent_id=intent.id, error=str(exc))
            raise


def _payment_event(intent: PaymentIntent, target: PaymentStatus, event: NormalizedEvent) -> Optional[DomainEvent]:
    common = {
        "payment_intent_id": intent.id,
        "provider": intent.provider.value,
        "provider_payment_id": intent.provider_payment_id,
    }
    if target is PaymentStatus.SUCCEEDED:
        return PaymentSucceeded(amount=intent.amount, currency=intent.currency, **common)
    if target is PaymentStatus.FAILED:
        return PaymentFailed(reason=event.failure_reason, **common)
    if target is PaymentStatus.CANCELED:
        return PaymentCanceled(**common)
    return None


def _receipt(
    event: NormalizedEvent,
    *,
    accepted: bool,
    reason: str,
    payment_intent_id: Optional[str] = None,
) -> WebhookEventRecord:
    return WebhookEventRecord.open(
        event.provider,
        accepted=accepted,
        reason=reason,
        provider_event_id=event.event_id,
        event_type=event.type.value,
        raw_type=event.raw_type,
        external_id=event.external_refund_id or event.external_id,
        payment_intent_id=payment_intent_id,
    )
