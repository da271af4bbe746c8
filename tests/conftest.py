from __future__ import annotations

from datetime import datetime

import pytest
from billing_fakes import NOW, FakeConverter, FakeGateway

from recurring_billing.billing.memory_store import MemoryBillingStore
from recurring_billing.billing.persistence import PersistenceGateway
from recurring_billing.worker import subscription_processor
from recurring_billing.worker.subscription_processor import SubscriptionProcessor


@pytest.fixture
def fixed_now(monkeypatch) -> datetime:
    monkeypatch.setattr(subscription_processor, "_utc_now", lambda: NOW)
    return NOW


@pytest.fixture
def store() -> MemoryBillingStore:
    return MemoryBillingStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter()


@pytest.fixture
def processor(store, gateway, converter) -> SubscriptionProcessor:
    return SubscriptionProcessor(
        persistence=PersistenceGateway(store),
        gateway=gateway,
        converter=converter,
        callback_url="http://localhost:3000/api/webhooks/zarinpal",
    )
