import pytest
from fastapi.testclient import TestClient

from recurring_billing.core.settings import get_settings
from recurring_billing.main import app


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_health() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_trigger_is_disabled_without_secret(monkeypatch) -> None:
    monkeypatch.delenv("BILLING_CRON_SECRET", raising=False)
    client = TestClient(app)

    response = client.post("/internal/billing/run", headers={"X-Billing-Cron-Secret": "anything"})

    assert response.status_code == 503


def test_trigger_rejects_wrong_secret(monkeypatch) -> None:
    monkeypatch.setenv("BILLING_CRON_SECRET", "cron-secret-value")
    client = TestClient(app)

    assert client.post("/internal/billing/run").status_code == 401
    response = client.post("/internal/billing/run", headers={"X-Billing-Cron-Secret": "wrong"})
    assert response.status_code == 401


def test_trigger_runs_billing_and_returns_report(monkeypatch) -> None:
    monkeypatch.setenv("BILLING_CRON_SECRET", "cron-secret-value")
    monkeypatch.setenv("BILLING_STORE", "memory")
    client = TestClient(app)

    response = client.post("/internal/billing/run", headers={"X-Billing-Cron-Secret": "cron-secret-value"})

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 0
    assert body["timeoutReached"] is False
    assert body["alerted"] is False
    assert body["runId"]
