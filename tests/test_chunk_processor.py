import asyncio
from collections.abc import Sequence
from datetime import timedelta

from billing_fakes import NOW, load_subscription, seed_failed_payment, seed_subscription
from dateutil.relativedelta import relativedelta

from recurring_billing.billing.errors import PersistenceError
from recurring_billing.billing.models import StoreOperation
from recurring_billing.billing.persistence import PersistenceGateway, TransactionExecutor
from recurring_billing.billing.result import BillingResult
from recurring_billing.worker.chunk_processor import ChunkProcessor, batched
from recurring_billing.worker.subscription_processor import SubscriptionProcessor


class RecordingExecutor:
    strategy = "transaction"

    def __init__(self, inner: TransactionExecutor) -> None:
        self.inner = inner
        self.batch_sizes: list[int] = []

    async def execute(self, operations: Sequence[StoreOperation]) -> None:
        self.batch_sizes.append(len(operations))
        await self.inner.execute(operations)


class RejectingExecutor:
    strategy = "transaction"

    async def execute(self, operations: Sequence[StoreOperation]) -> None:
        raise PersistenceError("store offline")


def _chunk_processor(persistence, gateway, converter, *, max_batch_size: int = 25) -> ChunkProcessor:
    processor = SubscriptionProcessor(
        persistence=persistence,
        gateway=gateway,
        converter=converter,
        callback_url="http://localhost:3000/api/webhooks/zarinpal",
    )
    return ChunkProcessor(persistence=persistence, processor=processor, max_batch_size=max_batch_size)


def test_chunk_isolates_failures_and_counts_each_outcome(fixed_now, store, gateway, converter) -> None:
    seed_subscription(store, "sub-1")
    seed_subscription(store, "sub-2", signature=None)
    seed_subscription(store, "sub-3", signature="contract-signature-3")
    seed_failed_payment(store, "pay-3", subscription_id="sub-3", next_retry_at=NOW + timedelta(hours=1))
    chunk = [load_subscription(store, sub_id) for sub_id in ("sub-1", "sub-2", "sub-3")]
    result = BillingResult()

    asyncio.run(_chunk_processor(PersistenceGateway(store), gateway, converter).process(chunk, result))

    assert result.processed == 3
    assert result.successful == 1
    assert result.failed == 1
    assert result.skipped == 1
    assert result.errors == ["Subscription sub-2 failed: No direct debit contract available"]
    assert gateway.charge_count == 1

    note = load_subscription(store, "sub-2").metadata
    assert note["plan"] == "pro"
    assert note["last_billing_error"] == "Subscription sub-2 failed: No direct debit contract available"
    assert note["last_billing_error_code"] == "contract_missing"
    assert note["last_billing_error_at"].endswith("Z")
    assert "last_billing_error" not in load_subscription(store, "sub-1").metadata
    assert "last_billing_error" not in load_subscription(store, "sub-3").metadata


def test_gateway_exception_does_not_stop_siblings(fixed_now, store, gateway, converter) -> None:
    for sub_id in ("sub-1", "sub-2", "sub-3"):
        seed_subscription(store, sub_id)
    gateway.erroring_subscriptions.add("sub-2")
    chunk = [load_subscription(store, sub_id) for sub_id in ("sub-1", "sub-2", "sub-3")]
    result = BillingResult()

    asyncio.run(_chunk_processor(PersistenceGateway(store), gateway, converter).process(chunk, result))

    assert result.processed == 3
    assert result.successful == 2
    assert result.failed == 1
    assert gateway.charge_count == 3
    assert load_subscription(store, "sub-1").next_billing_date == NOW + relativedelta(months=1)
    assert load_subscription(store, "sub-3").next_billing_date == NOW + relativedelta(months=1)
    assert load_subscription(store, "sub-2").metadata["last_billing_error_code"] == "gateway_error"
    failed = [row for row in store.list_rows("payment") if row["status"] == "failed"]
    assert [row["subscription_id"] for row in failed] == ["sub-2"]


def test_declined_subscription_counts_as_single_failure(fixed_now, store, gateway, converter) -> None:
    seed_subscription(store, "sub-1")
    gateway.declined_subscriptions.add("sub-1")
    result = BillingResult()

    asyncio.run(
        _chunk_processor(PersistenceGateway(store), gateway, converter).process(
            [load_subscription(store)], result
        )
    )

    assert result.processed == 1
    assert result.failed == 1
    assert result.successful == 0
    assert result.error_count == 1
    assert "Code: -52" in result.errors[0]
    assert load_subscription(store).metadata["last_billing_error_code"] == "gateway_decline"


def test_failure_notes_are_written_in_bounded_batches(fixed_now, store, gateway, converter) -> None:
    for index in range(30):
        seed_subscription(store, f"sub-{index:02d}", signature=None)
    executor = RecordingExecutor(TransactionExecutor(store))
    persistence = PersistenceGateway(store, executor=executor)
    chunk = [load_subscription(store, f"sub-{index:02d}") for index in range(30)]
    result = BillingResult()

    asyncio.run(_chunk_processor(persistence, gateway, converter, max_batch_size=25).process(chunk, result))

    assert result.failed == 30
    assert executor.batch_sizes == [25, 5]
    assert all("last_billing_error" in row["metadata"] for row in store.list_rows("subscription"))


def test_failure_note_write_errors_do_not_escape(fixed_now, store, gateway, converter) -> None:
    seed_subscription(store, "sub-1", signature=None)
    persistence = PersistenceGateway(store, executor=RejectingExecutor())
    result = BillingResult()

    asyncio.run(_chunk_processor(persistence, gateway, converter).process([load_subscription(store)], result))

    assert result.failed == 1
    assert result.error_count == 1
    assert "last_billing_error" not in load_subscription(store).metadata


def test_batched_splits_into_bounded_groups() -> None:
    operations = [
        StoreOperation(table="subscription", action="update", row_id=f"sub-{index}") for index in range(7)
    ]

    groups = batched(operations, 3)

    assert [len(group) for group in groups] == [3, 3, 1]
    assert batched([], 3) == []
