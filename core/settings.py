"""
Payment and referral settings using pydantic-settings v2 with nested env keys.

Examples:
    PAYMENT__STRIPE__SECRET_KEY=sk_test_...
    PAYMENT__RETRY__MAX_ATTEMPTS=4
    PAYMENT__YOOKASSA__WEBHOOK_SECRET=...
    REFERRAL_FRAUD__BLOCK_THRESHOLD=85
    REFERRAL_FRAUD__WEIGHTS__UA_BOT=60
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaymentTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 10.0
    write: float = 10.0
    total: float = 20.0


class PaymentRetry(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_backoff: float = 0.5
    max_backoff: float = 10.0


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR", "GBP"])
    webhook_ip_allowlist: list[str] | None = None

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)


# Published YooKassa notification sources
YOOKASSA_WEBHOOK_IPS = [
    "185.71.76.0/27",
    "185.71.77.0/27",
    "77.75.153.0/25",
    "77.75.156.11",
    "77.75.156.35",
    "77.75.154.128/25",
    "2a02:5180::/32",
]


class YooKassaSettings(BaseModel):
    shop_id: Optional[str] = None
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    api_base: str = "https://api.yookassa.ru/v3"
    return_url: str = "http://localhost:3000/checkout/complete"
    currencies: list[str] = Field(default_factory=lambda: ["RUB"])
    webhook_ip_allowlist: list[str] | None = Field(default_factory=lambda: list(YOOKASSA_WEBHOOK_IPS))

    @property
    def configured(self) -> bool:
        return bool(self.shop_id and self.secret_key)


class CoinGateSettings(BaseModel):
    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    api_base: str = "https://api.coingate.com/v2"
    receive_currency: str = "DO_NOT_CONVERT"
    callback_url: str = "http://localhost:8000/api/v1/payments/webhooks/coingate"
    success_url: str = "http://localhost:3000/checkout/complete"
    cancel_url: str = "http://localhost:3000/checkout/canceled"
    currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR", "GBP", "BTC", "ETH", "LTC", "USDT"])
    webhook_ip_allowlist: list[str] | None = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


class ExchangeRateSettings(BaseModel):
    api_base: str = "https://api.exchangerate-api.com/v4"
    api_key: Optional[str] = None
    max_age_hours: int = 24
    stale_fallback_hours: int = 72
    timeout: float = 5.0
    max_retries: int = 2


class PaymentSettings(BaseSettings):
    default_provider: str = "stripe"
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    yookassa: YooKassaSettings = Field(default_factory=YooKassaSettings)
    coingate: CoinGateSettings = Field(default_factory=CoinGateSettings)
    rates: ExchangeRateSettings = Field(default_factory=ExchangeRateSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    def provider_settings(self, provider: str):
        return {"stripe": self.stripe, "yookassa": self.yookassa, "coingate": self.coingate}.get(provider)


class FraudWeightSettings(BaseModel):
    velocity_base: int = 30
    velocity_per_extra_click: int = 10
    velocity_cap: int = 60
    ua_missing: int = 40
    ua_bot: int = 50
    ua_headless: int = 45
    ua_short: int = 10
    ua_no_mozilla: int = 15
    ua_cap: int = 60
    ip_abusive: int = 30
    ip_datacenter: int = 20
    ip_proxy: int = 15
    ip_private: int = 10
    referrer_malformed: int = 10
    referrer_mismatch: int = 5
    abuse_confidence_threshold: int = 50


class IpReputationSettings(BaseModel):
    # AbuseIPDB compatible endpoint; disabled without an api key
    api_base: str = "https://api.abuseipdb.com/api/v2"
    api_key: Optional[str] = None
    timeout: float = 2.0
    max_age_days: int = 90


class FraudSettings(BaseModel):
    block_threshold: int = 80
    flag_threshold: int = 50
    velocity_window_seconds: int = 60
    velocity_max_clicks: int = 5
    weights: FraudWeightSettings = Field(default_factory=FraudWeightSettings)
    datacenter_ranges: list[str] = Field(default_factory=list)
    allowed_referrer_hosts: list[str] = Field(default_factory=list)
    reputation: IpReputationSettings = Field(default_factory=IpReputationSettings)

    @model_validator(mode="after")
    def _check_thresholds(self):
        if not (0 < self.flag_threshold < self.block_threshold <= 100):
            raise ValueError("fraud thresholds must satisfy 0 < flag_threshold < block_threshold <= 100")
        return self


class ReferralSettings(BaseSettings):
    cookie_ttl_days: int = 30
    code_length: int = Field(default=8, ge=6, le=16)
    code_generation_attempts: int = 5
    fraud: FraudSettings = Field(default_factory=FraudSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="REFERRAL_",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
referral_settings = ReferralSettings()
