from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import uuid4

from dateutil.relativedelta import relativedelta

from recurring_billing.billing.errors import (
    ContractMissingError,
    ConversionError,
    GatewayDeclineError,
    GatewayError,
    MaxRetriesExceededError,
    PaymentInFlightError,
    PersistenceError,
    RetryNotDueError,
)
from recurring_billing.billing.models import (
    Contract,
    CurrencyConversion,
    CurrencyConverter,
    DirectDebitResult,
    Payment,
    PaymentGatewayClient,
    StoreOperation,
    Subscription,
)
from recurring_billing.billing.persistence import PersistenceGateway
from recurring_billing.core.logging import get_logger
from recurring_billing.worker.retry import next_retry_at, sanitize_error

logger = get_logger("worker.subscription")

PAYMENT_METHOD = "zarinpal_direct_debit"
BILLING_CYCLE = "monthly"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class PendingCharge:
    payment_id: str
    retry_count: int
    basis_retry_count: int
    max_retries: int
    amount: int


@dataclass(frozen=True)
class ChargeOutcome:
    subscription_id: str
    payment_id: str
    reference_id: str | None
    amount: int
    retry_count: int
    next_billing_date: datetime


@dataclass
class SubscriptionProcessor:
    """Charges one due subscription, or schedules its retry, or suspends it.

    Success returns a ``ChargeOutcome``; every other outcome raises a ``BillingError``
    subclass after the matching writes have been issued.
    """

    persistence: PersistenceGateway
    gateway: PaymentGatewayClient
    converter: CurrencyConverter
    callback_url: str
    settlement_currency: str = "IRT"
    default_max_retries: int = 3

    async def process(self, subscription: Subscription) -> ChargeOutcome:
        now = _utc_now()
        contract = await self._resolve_contract(subscription)

        pending = await self.persistence.find_pending_payment(subscription.id)
        if pending is not None:
            raise PaymentInFlightError(f"Pending payment {pending.id} already exists")

        retry_payment = await self._retry_basis(subscription, now)
        conversion = await self._convert(subscription)
        charge = await self._write_pending_payment(subscription, contract, conversion, retry_payment, now)
        return await self._charge(subscription, contract, charge, now)

    async def _resolve_contract(self, subscription: Subscription) -> Contract:
        signature = (subscription.direct_debit_contract_id or "").strip()
        if not signature:
            raise ContractMissingError("No direct debit contract available")

        contract = await self.persistence.find_active_contract(subscription.user_id, signature)
        if contract is None:
            raise ContractMissingError("Active direct debit contract not found")
        if not (contract.contract_signature or "").strip():
            raise ContractMissingError("Contract signature is missing")
        return contract

    async def _retry_basis(self, subscription: Subscription, now: datetime) -> Payment | None:
        latest_failed = await self.persistence.find_latest_failed_payment(subscription.id)
        if latest_failed is None:
            return None
        if latest_failed.next_retry_at is not None and latest_failed.next_retry_at > now:
            raise RetryNotDueError(f"Next retry scheduled at {_iso(latest_failed.next_retry_at)}")

        retry_payment = await self.persistence.find_retryable_failed_payment(subscription.id, now)
        if retry_payment is None:
            return None

        max_retries = retry_payment.max_retries or self.default_max_retries
        if retry_payment.retry_count >= max_retries:
            await self._suspend(subscription, now)
            logger.warning(
                "billing.subscription_suspended",
                extra={
                    "component": "billing",
                    "subscription_id": subscription.id,
                    "payment_id": retry_payment.id,
                    "retry_count": retry_payment.retry_count,
                    "max_retries": max_retries,
                },
            )
            raise MaxRetriesExceededError(max_retries)
        return retry_payment

    async def _suspend(self, subscription: Subscription, now: datetime) -> None:
        await self.persistence.execute_atomic(
            [
                StoreOperation(
                    table="subscription",
                    action="update",
                    row_id=subscription.id,
                    values={"status": "expired", "end_date": now, "updated_at": now},
                )
            ]
        )

    async def _convert(self, subscription: Subscription) -> CurrencyConversion:
        try:
            conversion = await self.converter.convert(subscription.current_price)
        except ConversionError:
            raise
        except Exception as exc:
            raise ConversionError(
                f"Currency conversion failed: {sanitize_error(exc, default_message='unknown error')}"
            ) from exc

        if conversion.converted_amount <= 0:
            raise ConversionError(
                f"Converted amount must be positive (price {subscription.current_price})"
            )

        logger.info(
            "billing.currency_converted",
            extra={
                "component": "billing",
                "subscription_id": subscription.id,
                "original_amount": conversion.original_amount,
                "converted_amount": conversion.converted_amount,
                "exchange_rate": conversion.exchange_rate,
            },
        )
        return conversion

    async def _write_pending_payment(
        self,
        subscription: Subscription,
        contract: Contract,
        conversion: CurrencyConversion,
        retry_payment: Payment | None,
        now: datetime,
    ) -> PendingCharge:
        metadata = {
            "original_amount": conversion.original_amount,
            "exchange_rate": conversion.exchange_rate,
            "conversion_timestamp": _iso(conversion.converted_at),
            "billing_cycle": BILLING_CYCLE,
            "is_automatic_billing": True,
            "direct_debit_contract_id": contract.id,
        }

        if retry_payment is not None:
            charge = PendingCharge(
                payment_id=retry_payment.id,
                retry_count=retry_payment.retry_count + 1,
                basis_retry_count=retry_payment.retry_count,
                max_retries=retry_payment.max_retries or self.default_max_retries,
                amount=conversion.converted_amount,
            )
            operation = StoreOperation(
                table="payment",
                action="update",
                row_id=charge.payment_id,
                values={
                    "amount": charge.amount,
                    "currency": self.settlement_currency,
                    "status": "pending",
                    "retry_count": charge.retry_count,
                    "next_retry_at": None,
                    "failure_reason": None,
                    "failed_at": None,
                    "gateway_authority": None,
                    "updated_at": now,
                    "metadata": {**retry_payment.metadata, **metadata},
                },
            )
        else:
            charge = PendingCharge(
                payment_id=str(uuid4()),
                retry_count=0,
                basis_retry_count=0,
                max_retries=self.default_max_retries,
                amount=conversion.converted_amount,
            )
            operation = StoreOperation(
                table="payment",
                action="insert",
                row_id=charge.payment_id,
                values={
                    "user_id": subscription.user_id,
                    "subscription_id": subscription.id,
                    "product_id": subscription.product_id,
                    "amount": charge.amount,
                    "currency": self.settlement_currency,
                    "status": "pending",
                    "payment_method": PAYMENT_METHOD,
                    "retry_count": 0,
                    "max_retries": charge.max_retries,
                    "next_retry_at": None,
                    "created_at": now,
                    "updated_at": now,
                    "metadata": metadata,
                },
            )

        await self.persistence.execute_atomic([operation])
        return charge

    async def _charge(
        self,
        subscription: Subscription,
        contract: Contract,
        charge: PendingCharge,
        now: datetime,
    ) -> ChargeOutcome:
        authority: str | None = None
        try:
            intent = await self.gateway.request_payment_intent(
                amount=charge.amount,
                currency=self.settlement_currency,
                description=f"Monthly subscription billing - {now:%Y-%m-%d}",
                callback_url=self.callback_url,
                metadata={
                    "subscription_id": subscription.id,
                    "payment_id": charge.payment_id,
                    "billing_cycle": BILLING_CYCLE,
                    "is_automatic_billing": True,
                    "is_direct_debit": True,
                },
            )
            authority = intent.authority
            result = await self.gateway.execute_direct_debit(
                authority=authority,
                contract_signature=str(contract.contract_signature),
            )
        except Exception as exc:
            reason = f"Gateway error: {sanitize_error(exc, default_message='Unknown payment error')}"
            await self._record_failure(subscription, charge, authority, reason)
            if isinstance(exc, GatewayError):
                raise
            raise GatewayError(reason) from exc

        if not result.succeeded:
            reason = _decline_reason(result)
            await self._record_failure(subscription, charge, authority, reason)
            raise GatewayDeclineError(reason, result_code=result.code)

        return await self._record_success(subscription, contract, charge, authority, result)

    async def _record_success(
        self,
        subscription: Subscription,
        contract: Contract,
        charge: PendingCharge,
        authority: str,
        result: DirectDebitResult,
    ) -> ChargeOutcome:
        paid_at = _utc_now()
        next_billing_date = paid_at + relativedelta(months=1)
        operations = [
            StoreOperation(
                table="payment",
                action="update",
                row_id=charge.payment_id,
                values={
                    "status": "completed",
                    "gateway_authority": authority,
                    "gateway_ref_id": result.reference_id,
                    "paid_at": paid_at,
                    "updated_at": paid_at,
                },
            ),
            StoreOperation(
                table="payment_method",
                action="update",
                row_id=contract.id,
                values={"last_used_at": paid_at, "updated_at": paid_at},
            ),
            StoreOperation(
                table="subscription",
                action="update",
                row_id=subscription.id,
                values={"next_billing_date": next_billing_date, "updated_at": paid_at},
            ),
        ]

        try:
            await self.persistence.execute_atomic(operations)
        except PersistenceError as exc:
            # The pending row stays behind and blocks further charges until reconciled.
            logger.error(
                "billing.success_write_failed",
                extra={
                    "component": "billing",
                    "subscription_id": subscription.id,
                    "payment_id": charge.payment_id,
                    "reference_id": result.reference_id,
                    "error": sanitize_error(exc, default_message="success write failed"),
                },
            )
            raise PersistenceError(
                f"Charged (ref {result.reference_id}) but failed to record success: {exc.message}"
            ) from exc

        logger.info(
            "billing.subscription_charged",
            extra={
                "component": "billing",
                "subscription_id": subscription.id,
                "payment_id": charge.payment_id,
                "reference_id": result.reference_id,
                "amount": charge.amount,
                "currency": self.settlement_currency,
                "retry_count": charge.retry_count,
                "next_billing_date": _iso(next_billing_date),
            },
        )
        return ChargeOutcome(
            subscription_id=subscription.id,
            payment_id=charge.payment_id,
            reference_id=result.reference_id,
            amount=charge.amount,
            retry_count=charge.retry_count,
            next_billing_date=next_billing_date,
        )

    async def _record_failure(
        self,
        subscription: Subscription,
        charge: PendingCharge,
        authority: str | None,
        reason: str,
    ) -> None:
        failed_at = _utc_now()
        retry_at = next_retry_at(charge.basis_retry_count + 1, failed_at)
        try:
            await self.persistence.execute_atomic(
                [
                    StoreOperation(
                        table="payment",
                        action="update",
                        row_id=charge.payment_id,
                        values={
                            "status": "failed",
                            "failure_reason": reason,
                            "failed_at": failed_at,
                            "next_retry_at": retry_at,
                            "gateway_authority": authority,
                            "updated_at": failed_at,
                        },
                    )
                ]
            )
        except PersistenceError as exc:
            logger.error(
                "billing.failure_write_failed",
                extra={
                    "component": "billing",
                    "subscription_id": subscription.id,
                    "payment_id": charge.payment_id,
                    "error": sanitize_error(exc, default_message="failure write failed"),
                },
            )
            return

        logger.warning(
            "billing.retry_scheduled",
            extra={
                "component": "billing",
                "subscription_id": subscription.id,
                "payment_id": charge.payment_id,
                "retry_count": charge.retry_count,
                "max_retries": charge.max_retries,
                "next_retry_at": _iso(retry_at),
                "reason": reason,
            },
        )


def _decline_reason(result: DirectDebitResult) -> str:
    message = (result.message or "").strip() or "Direct debit payment failed"
    return f"Direct debit declined: {message} (Code: {result.code})"
