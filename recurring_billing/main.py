import hmac

from fastapi import FastAPI, Header, HTTPException, status

from recurring_billing.core.logging import configure_logging, get_logger
from recurring_billing.core.settings import get_settings
from recurring_billing.worker.billing_run import run_scheduled_billing

configure_logging()
logger = get_logger("api.billing")

app = FastAPI(title="Recurring Billing")


@app.get("/healthz")
def root_healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/internal/billing/run")
async def trigger_billing_run(
    x_billing_cron_secret: str | None = Header(default=None, alias="X-Billing-Cron-Secret"),
) -> dict[str, object]:
    settings = get_settings()
    expected = (settings.BILLING_CRON_SECRET or "").strip()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing trigger is not configured",
        )
    if not x_billing_cron_secret or not hmac.compare_digest(x_billing_cron_secret, expected):
        logger.warning("billing.trigger_unauthorized", extra={"component": "api"})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    return await run_scheduled_billing(settings)
