from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from recurring_billing.billing.errors import GatewayError
from recurring_billing.billing.memory_store import MemoryBillingStore
from recurring_billing.billing.models import (
    CurrencyConversion,
    DirectDebitResult,
    Payment,
    PaymentIntent,
    Subscription,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
USER_ID = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
PRODUCT_ID = "pppppppp-pppp-pppp-pppp-pppppppppppp"
CONTRACT_SIGNATURE = "contract-signature-1"


class FakeGateway:
    def __init__(self) -> None:
        self.intent_calls: list[dict[str, Any]] = []
        self.debit_calls: list[dict[str, str]] = []
        self.intent_error: Exception | None = None
        self.debit_error: Exception | None = None
        self.debit_result = DirectDebitResult(code=100, reference_id="ref-1", message="ok")
        self.declined_subscriptions: set[str] = set()
        self.erroring_subscriptions: set[str] = set()

    async def request_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        description: str,
        callback_url: str,
        metadata: dict[str, Any],
    ) -> PaymentIntent:
        self.intent_calls.append(
            {
                "amount": amount,
                "currency": currency,
                "description": description,
                "callback_url": callback_url,
                "metadata": metadata,
            }
        )
        if self.intent_error is not None:
            raise self.intent_error
        return PaymentIntent(authority=f"A{len(self.intent_calls):035d}")

    async def execute_direct_debit(self, *, authority: str, contract_signature: str) -> DirectDebitResult:
        self.debit_calls.append({"authority": authority, "contract_signature": contract_signature})
        if self.debit_error is not None:
            raise self.debit_error
        subscription_id = self.intent_calls[-1]["metadata"]["subscription_id"]
        if subscription_id in self.erroring_subscriptions:
            raise GatewayError("Failed to execute direct transaction: ReadTimeout")
        if subscription_id in self.declined_subscriptions:
            return DirectDebitResult(code=-52, message="Card holder information is not correct")
        return self.debit_result

    @property
    def charge_count(self) -> int:
        return len(self.debit_calls)


class FakeConverter:
    def __init__(self, rate: float = 600_000.0) -> None:
        self.rate = rate
        self.error: Exception | None = None
        self.calls: list[float] = []

    async def convert(self, amount: float) -> CurrencyConversion:
        self.calls.append(amount)
        if self.error is not None:
            raise self.error
        return CurrencyConversion(
            original_amount=amount,
            converted_amount=int(amount * self.rate / 10),
            exchange_rate=self.rate,
            converted_at=NOW,
        )


def seed_subscription(
    store: MemoryBillingStore,
    subscription_id: str = "sub-1",
    *,
    user_id: str = USER_ID,
    signature: str | None = CONTRACT_SIGNATURE,
    with_contract: bool = True,
    next_billing_date: datetime = datetime(2026, 10, 1, tzinfo=UTC),
    current_price: float = 10.0,
    status: str = "active",
) -> None:
    store.add_row(
        "subscription",
        {
            "id": subscription_id,
            "user_id": user_id,
            "product_id": PRODUCT_ID,
            "billing_period": "monthly",
            "current_price": current_price,
            "next_billing_date": next_billing_date,
            "status": status,
            "direct_debit_contract_id": signature,
            "end_date": None,
            "metadata": {"plan": "pro"},
        },
    )
    if with_contract and signature:
        contract_id = f"pm-{subscription_id}"
        if store.get_row("payment_method", contract_id) is None:
            store.add_row(
                "payment_method",
                {
                    "id": contract_id,
                    "user_id": user_id,
                    "contract_signature": signature,
                    "contract_type": "direct_debit_contract",
                    "contract_status": "active",
                    "is_active": True,
                },
            )


def seed_failed_payment(
    store: MemoryBillingStore,
    payment_id: str,
    *,
    subscription_id: str = "sub-1",
    retry_count: int = 0,
    max_retries: int = 3,
    next_retry_at: datetime | None,
    created_at: datetime = datetime(2026, 10, 1, tzinfo=UTC),
) -> None:
    store.add_row(
        "payment",
        {
            "id": payment_id,
            "user_id": USER_ID,
            "subscription_id": subscription_id,
            "product_id": PRODUCT_ID,
            "amount": 600_000,
            "currency": "IRT",
            "status": "failed",
            "payment_method": "zarinpal_direct_debit",
            "retry_count": retry_count,
            "max_retries": max_retries,
            "next_retry_at": next_retry_at,
            "failure_reason": "Direct debit declined",
            "created_at": created_at,
            "metadata": {"billing_cycle": "monthly"},
        },
    )




def load_subscription(store: MemoryBillingStore, subscription_id: str = "sub-1") -> Subscription:
    row = store.get_row("subscription", subscription_id)
    assert row is not None
    return Subscription.model_validate(row)


def payments_for(store: MemoryBillingStore, subscription_id: str = "sub-1") -> list[Payment]:
    return [
        Payment.model_validate(row)
        for row in store.list_rows("payment")
        if row.get("subscription_id") == subscription_id
    ]
