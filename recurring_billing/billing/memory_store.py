"""In-process billing store for local development and tests.

Has no native batch primitive, so atomic groups run through ``transaction()``, which
restores a snapshot of every table if any write inside it fails.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from recurring_billing.billing.errors import PersistenceError
from recurring_billing.billing.models import (
    DIRECT_DEBIT_CONTRACT,
    Contract,
    Payment,
    StoreOperation,
    Subscription,
)

_EPOCH = datetime.min.replace(tzinfo=UTC)


class MemoryBillingStore:
    supports_batch_operations = False
    supports_transactions = True

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {
            "subscription": {},
            "payment": {},
            "payment_method": {},
        }
        self._lock = asyncio.Lock()

    def add_row(self, table: str, row: dict[str, Any]) -> None:
        row_id = str(row.get("id") or "")
        if not row_id:
            raise ValueError("row id is required")
        self._table(table)[row_id] = dict(row)

    def get_row(self, table: str, row_id: str) -> dict[str, Any] | None:
        row = self._table(table).get(row_id)
        return dict(row) if row is not None else None

    def list_rows(self, table: str) -> list[dict[str, Any]]:
        return [dict(row) for row in self._table(table).values()]

    async def find_due_subscriptions(self, as_of: datetime, *, limit: int) -> list[Subscription]:
        due = [
            subscription
            for subscription in (
                Subscription.model_validate(row) for row in self._table("subscription").values()
            )
            if subscription.is_due(as_of)
        ]
        due.sort(key=lambda subscription: subscription.next_billing_date or _EPOCH)
        return due[:limit]

    async def find_active_contract(self, user_id: str, contract_signature: str) -> Contract | None:
        for row in self._table("payment_method").values():
            if (
                row.get("user_id") == user_id
                and row.get("contract_signature") == contract_signature
                and row.get("is_active") is True
                and row.get("contract_type") == DIRECT_DEBIT_CONTRACT
            ):
                return Contract.model_validate(row)
        return None

    async def find_pending_payment(self, subscription_id: str) -> Payment | None:
        for payment in self._payments_for(subscription_id):
            if payment.status == "pending":
                return payment
        return None

    async def find_latest_failed_payment(self, subscription_id: str) -> Payment | None:
        failed = [p for p in self._payments_for(subscription_id) if p.status == "failed"]
        return _most_recent(failed)

    async def find_retryable_failed_payment(
        self, subscription_id: str, as_of: datetime
    ) -> Payment | None:
        retryable = [
            p
            for p in self._payments_for(subscription_id)
            if p.status == "failed" and p.next_retry_at is not None and p.next_retry_at <= as_of
        ]
        return _most_recent(retryable)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._lock:
            snapshot = copy.deepcopy(self._tables)
            try:
                yield
            except BaseException:
                self._tables = snapshot
                raise

    async def apply(self, operation: StoreOperation) -> None:
        table = self._table(operation.table)
        if operation.action == "insert":
            if operation.row_id in table:
                raise PersistenceError(f"{operation.table} {operation.row_id} already exists")
            table[operation.row_id] = {**operation.values, "id": operation.row_id}
            return

        row = table.get(operation.row_id)
        if row is None:
            raise PersistenceError(f"{operation.table} {operation.row_id} not found")
        row.update(operation.values)

    def _table(self, table: str) -> dict[str, dict[str, Any]]:
        try:
            return self._tables[table]
        except KeyError as exc:
            raise PersistenceError(f"unknown table: {table}") from exc

    def _payments_for(self, subscription_id: str) -> list[Payment]:
        return [
            Payment.model_validate(row)
            for row in self._table("payment").values()
            if row.get("subscription_id") == subscription_id
        ]


def _most_recent(payments: list[Payment]) -> Payment | None:
    if not payments:
        return None
    return max(payments, key=lambda payment: payment.created_at or _EPOCH)
