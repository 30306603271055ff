"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from application.ports.payment_gateway import PaymentGateway


logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("stripe", "yookassa", "coingate")


def build_payment_gateway(provider: Optional[str] = None, settings: Optional[PaymentSettings] = None) -> PaymentGateway:
    cfg = settings or payment_settings
    name = (provider or cfg.default_provider).lower()
    if name == "stripe":
        from .stripe_client import StripeClient
        return StripeClient(cfg.stripe, timeouts=cfg.timeouts, tolerance_seconds=cfg.webhook.tolerance_seconds)
    if name == "yookassa":
        from .yookassa_client import YooKassaClient
        return YooKassaClient(cfg.yookassa, timeouts=cfg.timeouts)
    if name == "coingate":
        from .coingate_client import CoinGateClient
        return CoinGateClient(cfg.coingate, timeouts=cfg.timeouts)
    raise ValueError(f"Unsupported payment provider: {name}")


def build_payment_gateways(settings: Optional[PaymentSettings] = None) -> dict[str, PaymentGateway]:
    """Build every provider that has credentials configured."""
    cfg = settings or payment_settings
    gateways: dict[str, PaymentGateway] = {}
    for name in SUPPORTED_PROVIDERS:
        if not cfg.provider_settings(name).configured:
            continue
        gateways[name] = build_payment_gateway(name, cfg)
    logger.info("payment_gateways_configured", providers=sorted(gateways))
    return gateways
