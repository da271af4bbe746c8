from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import httpx

from recurring_billing.billing.result import BillingResult
from recurring_billing.core.logging import get_logger
from recurring_billing.worker.retry import sanitize_error

logger = get_logger("worker.alerts")

ALERT_SOURCE = "monthly-billing-cron"
ALERT_ERROR_LIMIT = 10


class AlertDeliveryError(Exception):
    pass


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def alert_names(result: BillingResult) -> list[str]:
    names: list[str] = []
    if result.failed > 0:
        names.append("billing_failures")
    if result.timeout_reached:
        names.append("worker_timeout")
    if result.circuit_breaker_tripped:
        names.append("circuit_breaker_tripped")
    if result.error_count > ALERT_ERROR_LIMIT:
        names.append("high_error_count")
    return names


def should_alert(result: BillingResult) -> bool:
    return (
        result.failed > 0
        or result.timeout_reached
        or result.circuit_breaker_tripped
        or result.error_count > 0
    )


def build_alert_payload(
    result: BillingResult,
    *,
    execution_time_ms: int,
    timestamp: str | None = None,
) -> dict[str, Any]:
    return {
        "source": ALERT_SOURCE,
        "timestamp": timestamp or _now_iso(),
        "executionTimeMs": execution_time_ms,
        "summary": result.summary(),
        "alerts": alert_names(result),
        "errors": result.errors[:ALERT_ERROR_LIMIT],
    }


def log_run_report(result: BillingResult, *, execution_time_ms: int) -> None:
    logger.info(
        "billing.run_report",
        extra={
            "component": "billing",
            "timestamp": _now_iso(),
            "execution_time_ms": execution_time_ms,
            "timeout_reached": result.timeout_reached,
            "circuit_breaker_tripped": result.circuit_breaker_tripped,
            "chunks_processed": result.chunks_processed,
            "processed": result.processed,
            "successful": result.successful,
            "failed": result.failed,
            "skipped": result.skipped,
            "error_count": result.error_count,
        },
    )


class BillingAlertWebhook:
    def __init__(self, webhook_url: str, *, timeout_seconds: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds

    async def send(self, payload: dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AlertDeliveryError("Failed to send billing alert webhook request.") from exc


async def dispatch_run_alert(
    webhook: BillingAlertWebhook | None,
    result: BillingResult,
    *,
    execution_time_ms: int,
) -> bool:
    if webhook is None or not should_alert(result):
        return False

    payload = build_alert_payload(result, execution_time_ms=execution_time_ms)
    try:
        await webhook.send(payload)
    except AlertDeliveryError as exc:
        logger.error(
            "billing.alert_failed",
            extra={
                "component": "billing",
                "alerts": payload["alerts"],
                "error": sanitize_error(exc, default_message="alert webhook failed"),
            },
        )
        return False

    logger.info(
        "billing.alert_sent",
        extra={"component": "billing", "alerts": payload["alerts"]},
    )
    return True
