"""Persistence boundary of the billing run.

Stores expose reads plus one of two write capabilities:

* ``batch(operations)`` - a native multi-statement batch that the backend applies atomically.
* ``transaction()`` + ``apply(operation)`` - an atomic context wrapping sequential writes.

``select_executor`` probes the store once; ``PersistenceGateway`` then uses the chosen
executor for every atomic group of the run.
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol, runtime_checkable

from recurring_billing.billing.errors import PersistenceError
from recurring_billing.billing.models import Contract, Payment, StoreOperation, Subscription
from recurring_billing.core.logging import get_logger

logger = get_logger("billing.persistence")


class BillingStore(Protocol):
    async def find_due_subscriptions(self, as_of: datetime, *, limit: int) -> list[Subscription]:
        ...

    async def find_active_contract(self, user_id: str, contract_signature: str) -> Contract | None:
        ...

    async def find_pending_payment(self, subscription_id: str) -> Payment | None:
        ...

    async def find_latest_failed_payment(self, subscription_id: str) -> Payment | None:
        ...

    async def find_retryable_failed_payment(
        self, subscription_id: str, as_of: datetime
    ) -> Payment | None:
        ...


@runtime_checkable
class BatchCapableStore(Protocol):
    supports_batch_operations: bool

    async def batch(self, operations: Sequence[StoreOperation]) -> None:
        ...


@runtime_checkable
class TransactionalStore(Protocol):
    supports_transactions: bool

    def transaction(self) -> AbstractAsyncContextManager[None]:
        ...

    async def apply(self, operation: StoreOperation) -> None:
        ...


class AtomicExecutor(Protocol):
    strategy: str

    async def execute(self, operations: Sequence[StoreOperation]) -> None:
        ...


class BatchExecutor:
    strategy = "batch"

    def __init__(self, store: BatchCapableStore) -> None:
        self.store = store

    async def execute(self, operations: Sequence[StoreOperation]) -> None:
        if not operations:
            return
        await self.store.batch(list(operations))


class TransactionExecutor:
    strategy = "transaction"

    def __init__(self, store: TransactionalStore) -> None:
        self.store = store

    async def execute(self, operations: Sequence[StoreOperation]) -> None:
        if not operations:
            return
        async with self.store.transaction():
            for operation in operations:
                await self.store.apply(operation)


def select_executor(store: object) -> AtomicExecutor:
    if getattr(store, "supports_batch_operations", False) and callable(getattr(store, "batch", None)):
        return BatchExecutor(store)  # type: ignore[arg-type]
    if getattr(store, "supports_transactions", False) and callable(getattr(store, "transaction", None)):
        return TransactionExecutor(store)  # type: ignore[arg-type]
    raise PersistenceError(f"{type(store).__name__} supports neither batch nor transactional writes")


class PersistenceGateway:
    def __init__(self, store: BillingStore, executor: AtomicExecutor | None = None) -> None:
        self.store = store
        self.executor = executor or select_executor(store)
        logger.info(
            "billing.persistence_strategy_selected",
            extra={
                "component": "billing",
                "store": type(store).__name__,
                "strategy": self.executor.strategy,
            },
        )

    async def find_due_subscriptions(self, as_of: datetime, *, limit: int) -> list[Subscription]:
        return await self.store.find_due_subscriptions(as_of, limit=limit)

    async def find_active_contract(self, user_id: str, contract_signature: str) -> Contract | None:
        return await self.store.find_active_contract(user_id, contract_signature)

    async def find_pending_payment(self, subscription_id: str) -> Payment | None:
        return await self.store.find_pending_payment(subscription_id)

    async def find_latest_failed_payment(self, subscription_id: str) -> Payment | None:
        return await self.store.find_latest_failed_payment(subscription_id)

    async def find_retryable_failed_payment(
        self, subscription_id: str, as_of: datetime
    ) -> Payment | None:
        return await self.store.find_retryable_failed_payment(subscription_id, as_of)

    async def execute_atomic(self, operations: Sequence[StoreOperation]) -> None:
        try:
            await self.executor.execute(operations)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Atomic write of {len(operations)} operation(s) failed: {exc}") from exc
