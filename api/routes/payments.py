"""
Payments API routes.

Keep this thin: request parsing and HTTP mapping only, no SDK details here.
"""
from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from api.dependencies import get_payment_orchestrator
from api.middleware.request_id import resolve_client_ip
from application.dtos.payments import (
    CreatePaymentRequest,
    ErrorInfo,
    PaymentDetails,
    PaymentResult,
    RefundRequest,
    RefundResult,
)
from application.services.payment_orchestrator import PaymentOrchestrator
from core.exceptions import business_code_to_http_status
from core.logging_config import get_logger
from core.response import Response as ApiResponse, error_response, success_response
from core.settings import payment_settings
from shared.codes.payment_codes import PaymentCode


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _failure(error: Optional[ErrorInfo], request: Request) -> JSONResponse:
    error = error or ErrorInfo(message="Payment failed", code=PaymentCode.PROVIDER_ERROR)
    response = error_response(
        code=error.code,
        message=error.message,
        error_type=error.type or "BusinessError",
        details=error.details,
        request_id=getattr(request.state, "request_id", None),
    )
    return JSONResponse(
        status_code=business_code_to_http_status(error.code),
        content=response.model_dump(mode="json"),
    )


def _invalid_webhook(request: Request) -> JSONResponse:
    # one body for every rejection reason
    response = error_response(
        code=PaymentCode.SIGNATURE_ERROR,
        message="Invalid webhook",
        error_type="InvalidWebhook",
        request_id=getattr(request.state, "request_id", None),
    )
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=response.model_dump(mode="json"))


def ip_permitted(remote_ip: Optional[str], allowlist: Optional[list[str]]) -> bool:
    """Empty allowlist permits everything; entries are addresses or CIDR ranges."""
    if not allowlist:
        return True
    if not remote_ip:
        return False
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if rip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


@router.post(
    "/intents",
    summary="Create payment",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[PaymentResult],
)
async def create_payment(
    payload: CreatePaymentRequest,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """
    Create a payment intent with the chosen provider.

    - **amount**: integer minor units (2999 == 29.99)
    - **source_currency**: optional, converts ``amount`` into ``currency`` first
    - **idempotency_key**: optional; derived from the order id when omitted
    """
    result = await orchestrator.create_payment(payload)
    if not result.success:
        return _failure(result.error, request)
    return success_response(data=result, message="Payment intent created")


@router.get("/intents/{intent_id}", summary="Get payment", response_model=ApiResponse[PaymentDetails])
async def get_payment(
    intent_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    details = await orchestrator.get_payment(intent_id)
    return success_response(data=details)


@router.post("/refunds", summary="Refund payment", response_model=ApiResponse[RefundResult])
async def process_refund(
    payload: RefundRequest,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Refund a succeeded payment; omit ``amount`` to refund the remaining balance."""
    result = await orchestrator.process_refund(payload)
    if not result.success:
        return _failure(result.error, request)
    return success_response(data=result, message="Refund submitted")


@router.post("/webhooks/{provider}", summary="Provider webhook")
async def payments_webhook(
    provider: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    provider = provider.lower()
    provider_cfg = payment_settings.provider_settings(provider)
    if provider_cfg is None:
        logger.warning("webhook_rejected", provider=provider, reason="unknown_provider")
        return _invalid_webhook(request)

    remote_ip = resolve_client_ip(request)
    if not ip_permitted(remote_ip, provider_cfg.webhook_ip_allowlist):
        logger.warning("webhook_rejected", provider=provider, reason="ip_not_allowed", remote_ip=remote_ip)
        return _invalid_webhook(request)

    raw_body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    accepted = await orchestrator.handle_webhook(provider, headers, raw_body)
    if not accepted:
        return _invalid_webhook(request)
    # 200 acknowledges receipt per provider conventions
    return success_response(data={"provider": provider, "received": True}, message="Webhook received")
