"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import PaymentIntentModel, RefundModel
from .exchange_rate import ExchangeRateModel
from .referral import ReferralLinkModel, ReferralStatsModel, ReferralTrackingModel
from .outbox import OutboxEventModel
from .webhook_event import WebhookEventModel

__all__ = [
    "Base",
    "metadata",
    "PaymentIntentModel",
    "RefundModel",
    "ExchangeRateModel",
    "ReferralLinkModel",
    "ReferralStatsModel",
    "ReferralTrackingModel",
    "OutboxEventModel",
    "WebhookEventModel",
]
