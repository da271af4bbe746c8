from __future__ import annotations


class BillingError(Exception):
    """Base class for failures of a single billing attempt or of the store/gateway adapters."""

    code = "billing_error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ContractMissingError(BillingError):
    code = "contract_missing"


class PaymentInFlightError(BillingError):
    code = "payment_in_flight"


class MaxRetriesExceededError(BillingError):
    code = "max_retries_exceeded"

    def __init__(self, max_retries: int) -> None:
        super().__init__(f"Max retries ({max_retries}) reached, subscription suspended")
        self.max_retries = max_retries


class RetryNotDueError(BillingError):
    code = "retry_not_due"
    retryable = True


class ConversionError(BillingError):
    code = "conversion_failed"
    retryable = True


class GatewayError(BillingError):
    code = "gateway_error"
    retryable = True


class GatewayDeclineError(GatewayError):
    code = "gateway_decline"

    def __init__(self, message: str, *, result_code: int | None) -> None:
        super().__init__(message)
        self.result_code = result_code


class PersistenceError(BillingError):
    code = "persistence_failed"
