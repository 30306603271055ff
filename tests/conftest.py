"""Pytest bootstrap configuration.

Ensure environment variables are set before test collection and module
imports that depend on application settings.
"""
import os

os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DEBUG", "false")
os.environ.pop("REDIS__URL", None)

import pytest

from application.services.event_dispatcher import EventDispatcher
from application.services.payment_orchestrator import PaymentOrchestrator
from core.settings import PaymentRetry
from tests.fakes import InMemoryStore, RecordingPublisher, StubGateway, no_sleep


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def retry_policy() -> PaymentRetry:
    return PaymentRetry(max_attempts=3, base_backoff=0.01, max_backoff=0.05)


@pytest.fixture
def gateways() -> dict:
    return {
        "stripe": StubGateway("stripe", currencies=["USD", "EUR"]),
        "yookassa": StubGateway("yookassa", currencies=["RUB"], refund_requires_amount=True),
        "coingate": StubGateway("coingate", currencies=["USD", "BTC"], refunds_supported=False),
    }


@pytest.fixture
def dispatcher(store, publisher) -> EventDispatcher:
    return EventDispatcher(store.uow_factory, publisher)


@pytest.fixture
def orchestrator(store, gateways, dispatcher, retry_policy) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        store.uow_factory,
        gateways,
        event_dispatcher=dispatcher,
        retry_policy=retry_policy,
        retry_sleep=no_sleep,
    )
