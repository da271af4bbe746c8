from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from recurring_billing.billing.models import Contract, Payment, StoreOperation, Subscription
from recurring_billing.core.supabase_rest import (
    rpc_apply_billing_operations,
    select_active_direct_debit_contract,
    select_due_subscriptions,
    select_latest_failed_payment,
    select_pending_payment,
)


class SupabaseBillingStore:
    """PostgREST-backed store. Atomic groups go through one RPC call applied in a single transaction."""

    supports_batch_operations = True
    supports_transactions = False

    def __init__(self, *, batch_function: str = "billing_apply_operations") -> None:
        self.batch_function = batch_function

    async def find_due_subscriptions(self, as_of: datetime, *, limit: int) -> list[Subscription]:
        rows = await select_due_subscriptions(as_of, limit)
        return [Subscription.model_validate(row) for row in rows]

    async def find_active_contract(self, user_id: str, contract_signature: str) -> Contract | None:
        row = await select_active_direct_debit_contract(user_id, contract_signature)
        return Contract.model_validate(row) if row else None

    async def find_pending_payment(self, subscription_id: str) -> Payment | None:
        row = await select_pending_payment(subscription_id)
        return Payment.model_validate(row) if row else None

    async def find_latest_failed_payment(self, subscription_id: str) -> Payment | None:
        row = await select_latest_failed_payment(subscription_id)
        return Payment.model_validate(row) if row else None

    async def find_retryable_failed_payment(
        self, subscription_id: str, as_of: datetime
    ) -> Payment | None:
        row = await select_latest_failed_payment(subscription_id, retry_due_before=as_of)
        return Payment.model_validate(row) if row else None

    async def batch(self, operations: Sequence[StoreOperation]) -> None:
        payload = [
            {
                "table": operation.table,
                "action": operation.action,
                "id": operation.row_id,
                "values": operation.values,
            }
            for operation in operations
        ]
        await rpc_apply_billing_operations(self.batch_function, payload)
