from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field, field_validator

SubscriptionStatus = Literal["active", "canceled", "expired", "pending"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded", "canceled"]
BillingPeriod = Literal["one_time", "monthly"]
StoreTable = Literal["subscription", "payment", "payment_method"]

DIRECT_DEBIT_CONTRACT = "direct_debit_contract"
GATEWAY_SUCCESS_CODE = 100


def _normalize_metadata(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _as_utc(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Subscription(BaseModel):
    id: str
    user_id: str
    product_id: str
    billing_period: BillingPeriod = "monthly"
    current_price: float
    next_billing_date: datetime | None = None
    status: SubscriptionStatus = "pending"
    direct_debit_contract_id: str | None = None
    end_date: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _normalize_metadata(cls, value: Any) -> dict[str, Any]:
        return _normalize_metadata(value)

    @field_validator("next_billing_date", "end_date", mode="after")
    @classmethod
    def _utc_dates(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def is_due(self, as_of: datetime) -> bool:
        return (
            self.status == "active"
            and self.billing_period == "monthly"
            and self.next_billing_date is not None
            and self.next_billing_date <= as_of
            and self.end_date is None
        )


class Contract(BaseModel):
    id: str
    user_id: str
    contract_signature: str | None = None
    contract_type: str = "pending_contract"
    contract_status: str = "pending_signature"
    is_active: bool = True
    last_used_at: datetime | None = None


class Payment(BaseModel):
    id: str
    user_id: str
    subscription_id: str | None = None
    product_id: str
    amount: float
    currency: str = "IRT"
    status: PaymentStatus = "pending"
    payment_method: str = "zarinpal_direct_debit"
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: datetime | None = None
    failure_reason: str | None = None
    gateway_authority: str | None = None
    gateway_ref_id: str | None = None
    created_at: datetime | None = None
    paid_at: datetime | None = None
    failed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _normalize_metadata(cls, value: Any) -> dict[str, Any]:
        return _normalize_metadata(value)

    @field_validator("next_retry_at", "created_at", "paid_at", "failed_at", mode="after")
    @classmethod
    def _utc_dates(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class CurrencyConversion(BaseModel):
    original_amount: float
    converted_amount: int
    exchange_rate: float
    converted_at: datetime


class PaymentIntent(BaseModel):
    authority: str
    code: int = GATEWAY_SUCCESS_CODE
    message: str | None = None


class DirectDebitResult(BaseModel):
    code: int
    reference_id: str | None = None
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.code == GATEWAY_SUCCESS_CODE


class StoreOperation(BaseModel):
    """One row write inside an atomic group."""

    table: StoreTable
    action: Literal["insert", "update"]
    row_id: str
    values: dict[str, Any] = Field(default_factory=dict)


class CurrencyConverter(Protocol):
    async def convert(self, amount: float) -> CurrencyConversion:
        ...


class PaymentGatewayClient(Protocol):
    async def request_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        description: str,
        callback_url: str,
        metadata: dict[str, Any],
    ) -> PaymentIntent:
        ...

    async def execute_direct_debit(self, *, authority: str, contract_signature: str) -> DirectDebitResult:
        ...
