from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from time import monotonic, perf_counter

from recurring_billing.billing.memory_store import MemoryBillingStore
from recurring_billing.billing.models import CurrencyConverter, PaymentGatewayClient, Subscription
from recurring_billing.billing.persistence import BillingStore, PersistenceGateway
from recurring_billing.billing.result import BillingResult
from recurring_billing.billing.supabase_store import SupabaseBillingStore
from recurring_billing.core.logging import get_logger, reset_run_id, set_run_id
from recurring_billing.core.settings import Settings, get_settings
from recurring_billing.integrations.currency_exchange import CurrencyExchangeService
from recurring_billing.integrations.zarinpal import ZarinPalClient
from recurring_billing.worker.alerts import BillingAlertWebhook, dispatch_run_alert, log_run_report
from recurring_billing.worker.chunk_processor import ChunkProcessor
from recurring_billing.worker.retry import sanitize_error
from recurring_billing.worker.subscription_processor import SubscriptionProcessor

logger = get_logger("worker.billing_run")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def chunked(subscriptions: Sequence[Subscription], size: int) -> list[list[Subscription]]:
    size = max(1, size)
    return [list(subscriptions[index : index + size]) for index in range(0, len(subscriptions), size)]


class BillingRunCoordinator:
    def __init__(
        self,
        *,
        persistence: PersistenceGateway,
        chunk_processor: ChunkProcessor,
        time_budget_seconds: float = 28.0,
        chunk_size: int = 10,
        due_limit: int = 1000,
        breaker_min_processed: int = 20,
        max_recorded_errors: int = 100,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.persistence = persistence
        self.chunk_processor = chunk_processor
        self.time_budget_seconds = max(0.0, time_budget_seconds)
        self.chunk_size = max(1, chunk_size)
        self.due_limit = max(1, due_limit)
        self.breaker_min_processed = breaker_min_processed
        self.max_recorded_errors = max_recorded_errors
        self.clock = clock

    async def run(self) -> BillingResult:
        started = self.clock()
        result = BillingResult(max_recorded_errors=self.max_recorded_errors)
        logger.info("billing.run_started", extra={"component": "billing"})

        try:
            due_subscriptions = await self.persistence.find_due_subscriptions(
                _utc_now(), limit=self.due_limit
            )
        except Exception as exc:
            error_text = f"Billing run failed: {sanitize_error(exc, default_message='Unknown error')}"
            result.record_error(error_text)
            logger.error("billing.run_failed", extra={"component": "billing", "error": error_text})
            return result

        if not due_subscriptions:
            logger.info("billing.nothing_due", extra={"component": "billing"})
            return result

        chunks = chunked(due_subscriptions, self.chunk_size)
        logger.info(
            "billing.due_subscriptions_loaded",
            extra={
                "component": "billing",
                "total_subscriptions": len(due_subscriptions),
                "total_chunks": len(chunks),
                "chunk_size": self.chunk_size,
            },
        )

        for chunk_index, chunk in enumerate(chunks):
            elapsed = self.clock() - started
            if elapsed > self.time_budget_seconds:
                result.timeout_reached = True
                logger.warning(
                    "billing.time_budget_exhausted",
                    extra={
                        "component": "billing",
                        "processed_chunks": chunk_index,
                        "total_chunks": len(chunks),
                        "elapsed_ms": int(elapsed * 1000),
                    },
                )
                break

            try:
                await self.chunk_processor.process(chunk, result)
                result.chunks_processed += 1
                logger.info(
                    "billing.chunk_processed",
                    extra={
                        "component": "billing",
                        "chunk_index": chunk_index,
                        "chunk_size": len(chunk),
                        "processed": result.processed,
                    },
                )
            except Exception as exc:
                error_text = f"Chunk {chunk_index} failed: {sanitize_error(exc, default_message='Unknown error')}"
                result.record_error(error_text)
                logger.error(
                    "billing.chunk_failed",
                    extra={"component": "billing", "chunk_index": chunk_index, "error": error_text},
                )

            if result.circuit_open(self.breaker_min_processed):
                result.circuit_breaker_tripped = True
                logger.error(
                    "billing.circuit_breaker_tripped",
                    extra={
                        "component": "billing",
                        "processed": result.processed,
                        "failed": result.failed,
                        "successful": result.successful,
                    },
                )
                break

        logger.info("billing.run_completed", extra={"component": "billing", "result": result.as_dict()})
        return result


def build_store(settings: Settings) -> BillingStore:
    if settings.BILLING_STORE.strip().lower() == "memory":
        return MemoryBillingStore()
    return SupabaseBillingStore(batch_function=settings.BILLING_BATCH_RPC)


def build_coordinator(
    settings: Settings,
    *,
    store: BillingStore | None = None,
    gateway: PaymentGatewayClient | None = None,
    converter: CurrencyConverter | None = None,
) -> BillingRunCoordinator:
    persistence = PersistenceGateway(store or build_store(settings))
    processor = SubscriptionProcessor(
        persistence=persistence,
        gateway=gateway or ZarinPalClient.from_settings(settings),
        converter=converter or CurrencyExchangeService.from_settings(settings),
        callback_url=settings.gateway_callback_url,
        settlement_currency=settings.BILLING_SETTLEMENT_CURRENCY,
        default_max_retries=settings.BILLING_DEFAULT_MAX_RETRIES,
    )
    chunk_processor = ChunkProcessor(
        persistence=persistence,
        processor=processor,
        max_batch_size=settings.BILLING_MAX_BATCH_SIZE,
    )
    return BillingRunCoordinator(
        persistence=persistence,
        chunk_processor=chunk_processor,
        time_budget_seconds=settings.BILLING_TIME_BUDGET_SECONDS,
        chunk_size=settings.BILLING_CHUNK_SIZE,
        due_limit=settings.BILLING_DUE_LIMIT,
        breaker_min_processed=settings.BILLING_BREAKER_MIN_PROCESSED,
        max_recorded_errors=settings.BILLING_MAX_RECORDED_ERRORS,
    )


async def run_billing(
    settings: Settings | None = None,
    *,
    store: BillingStore | None = None,
    gateway: PaymentGatewayClient | None = None,
    converter: CurrencyConverter | None = None,
) -> BillingResult:
    settings = settings or get_settings()
    coordinator = build_coordinator(settings, store=store, gateway=gateway, converter=converter)
    return await coordinator.run()


async def run_scheduled_billing(
    settings: Settings | None = None,
    *,
    store: BillingStore | None = None,
    gateway: PaymentGatewayClient | None = None,
    converter: CurrencyConverter | None = None,
    webhook: BillingAlertWebhook | None = None,
) -> dict[str, object]:
    """One scheduled invocation: run, log the report, alert when something went wrong."""
    settings = settings or get_settings()
    run_id = str(uuid.uuid4())
    run_id_token = set_run_id(run_id)
    started = perf_counter()
    try:
        logger.info("billing.cron_triggered", extra={"component": "scheduler"})
        try:
            result = await run_billing(settings, store=store, gateway=gateway, converter=converter)
        except Exception:
            logger.exception(
                "billing.cron_failed",
                extra={
                    "component": "scheduler",
                    "execution_time_ms": int((perf_counter() - started) * 1000),
                },
            )
            raise

        execution_time_ms = int((perf_counter() - started) * 1000)
        log_run_report(result, execution_time_ms=execution_time_ms)

        if webhook is None and settings.BILLING_ALERT_WEBHOOK_URL:
            webhook = BillingAlertWebhook(
                settings.BILLING_ALERT_WEBHOOK_URL,
                timeout_seconds=settings.ALERT_WEBHOOK_TIMEOUT_SECONDS,
            )
        alerted = await dispatch_run_alert(webhook, result, execution_time_ms=execution_time_ms)

        report = result.as_dict()
        report["runId"] = run_id
        report["executionTimeMs"] = execution_time_ms
        report["alerted"] = alerted
        return report
    finally:
        reset_run_id(run_id_token)
