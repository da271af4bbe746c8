import pytest

from recurring_billing import __main__ as billing_main
from recurring_billing.core.settings import get_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_api_mode_serves_on_configured_host_and_port(monkeypatch) -> None:
    served: list[dict[str, object]] = []

    def fake_run(app: str, **kwargs: object) -> None:
        served.append({"app": app, **kwargs})

    monkeypatch.setenv("BILLING_MODE", "api")
    monkeypatch.setenv("API_HOST", "0.0.0.0")
    monkeypatch.setenv("API_PORT", "9000")
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.setattr(billing_main.uvicorn, "run", fake_run)

    billing_main.main()

    assert served == [{"app": "recurring_billing.main:app", "host": "0.0.0.0", "port": 9000}]


def test_api_mode_prefers_platform_port(monkeypatch) -> None:
    served: list[dict[str, object]] = []

    def fake_run(app: str, **kwargs: object) -> None:
        served.append(kwargs)

    monkeypatch.setenv("BILLING_MODE", "api")
    monkeypatch.delenv("API_HOST", raising=False)
    monkeypatch.setenv("PORT", "8443")
    monkeypatch.setattr(billing_main.uvicorn, "run", fake_run)

    billing_main.main()

    assert served == [{"host": "127.0.0.1", "port": 8443}]


def test_cron_mode_runs_one_billing_pass(monkeypatch) -> None:
    calls: list[object] = []

    async def fake_run_scheduled_billing(settings) -> dict[str, object]:
        calls.append(settings)
        return {"processed": 0}

    def fail_run(app: str, **kwargs: object) -> None:
        raise AssertionError("cron mode should not start the API server")

    monkeypatch.setenv("BILLING_MODE", "cron")
    monkeypatch.setattr(billing_main, "run_scheduled_billing", fake_run_scheduled_billing)
    monkeypatch.setattr(billing_main.uvicorn, "run", fail_run)

    billing_main.main()

    assert len(calls) == 1
    assert calls[0].BILLING_MODE == "cron"
