from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from recurring_billing.billing.errors import PersistenceError, RetryNotDueError
from recurring_billing.billing.models import StoreOperation, Subscription
from recurring_billing.billing.persistence import PersistenceGateway
from recurring_billing.billing.result import BillingResult
from recurring_billing.core.logging import get_logger
from recurring_billing.worker.retry import sanitize_error
from recurring_billing.worker.subscription_processor import SubscriptionProcessor

logger = get_logger("worker.chunk")


@dataclass(frozen=True)
class SubscriptionFailure:
    subscription: Subscription
    error: str
    error_code: str


def batched(items: Sequence[StoreOperation], size: int) -> list[list[StoreOperation]]:
    size = max(1, size)
    return [list(items[index : index + size]) for index in range(0, len(items), size)]


class ChunkProcessor:
    def __init__(
        self,
        *,
        persistence: PersistenceGateway,
        processor: SubscriptionProcessor,
        max_batch_size: int = 25,
    ) -> None:
        self.persistence = persistence
        self.processor = processor
        self.max_batch_size = max(1, max_batch_size)

    async def process(self, chunk: Sequence[Subscription], result: BillingResult) -> None:
        failures: list[SubscriptionFailure] = []

        for subscription in chunk:
            result.processed += 1
            try:
                await self.processor.process(subscription)
            except RetryNotDueError as exc:
                result.skipped += 1
                logger.info(
                    "billing.retry_not_due",
                    extra={
                        "component": "billing",
                        "subscription_id": subscription.id,
                        "detail": exc.message,
                    },
                )
                continue
            except Exception as exc:
                result.failed += 1
                error_code = str(getattr(exc, "code", "unexpected_error"))
                error_text = (
                    f"Subscription {subscription.id} failed: "
                    f"{sanitize_error(exc, default_message='Unknown error')}"
                )
                result.record_error(error_text)
                failures.append(
                    SubscriptionFailure(subscription=subscription, error=error_text, error_code=error_code)
                )
                logger.error(
                    "billing.subscription_failed",
                    extra={
                        "component": "billing",
                        "subscription_id": subscription.id,
                        "error_code": error_code,
                        "retryable": bool(getattr(exc, "retryable", False)),
                        "error": error_text,
                    },
                )
                continue

            result.successful += 1

        await self._record_failure_notes(failures)

    async def _record_failure_notes(self, failures: Sequence[SubscriptionFailure]) -> None:
        if not failures:
            return

        noted_at = datetime.now(UTC)
        operations = [
            StoreOperation(
                table="subscription",
                action="update",
                row_id=failure.subscription.id,
                values={
                    "metadata": {
                        **failure.subscription.metadata,
                        "last_billing_error": failure.error,
                        "last_billing_error_code": failure.error_code,
                        "last_billing_error_at": noted_at.isoformat().replace("+00:00", "Z"),
                    },
                    "updated_at": noted_at,
                },
            )
            for failure in failures
        ]

        for batch in batched(operations, self.max_batch_size):
            try:
                await self.persistence.execute_atomic(batch)
            except PersistenceError as exc:
                logger.error(
                    "billing.failure_notes_failed",
                    extra={
                        "component": "billing",
                        "count": len(batch),
                        "error": sanitize_error(exc, default_message="failure note write failed"),
                    },
                )
