from __future__ import annotations

import asyncio
import os

import uvicorn

from recurring_billing.core.logging import configure_logging, get_logger
from recurring_billing.core.settings import get_settings
from recurring_billing.worker.billing_run import run_scheduled_billing

logger = get_logger("worker.entrypoint")


def main() -> None:
    configure_logging()
    settings = get_settings()
    mode = settings.BILLING_MODE.strip().lower()

    if mode == "cron":
        report = asyncio.run(run_scheduled_billing(settings))
        logger.info(
            "billing.cron_finished",
            extra={"component": "scheduler", "processed": report.get("processed")},
        )
        return

    host = settings.API_HOST
    port = int(os.getenv("PORT", str(settings.API_PORT)))
    uvicorn.run("recurring_billing.main:app", host=host, port=port)


if __name__ == "__main__":
    main()
