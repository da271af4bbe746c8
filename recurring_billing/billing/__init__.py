from recurring_billing.billing.errors import (
    BillingError,
    ContractMissingError,
    ConversionError,
    GatewayDeclineError,
    GatewayError,
    MaxRetriesExceededError,
    PaymentInFlightError,
    PersistenceError,
    RetryNotDueError,
)
from recurring_billing.billing.persistence import PersistenceGateway, select_executor
from recurring_billing.billing.result import BillingResult

__all__ = [
    "BillingError",
    "BillingResult",
    "ContractMissingError",
    "ConversionError",
    "GatewayDeclineError",
    "GatewayError",
    "MaxRetriesExceededError",
    "PaymentInFlightError",
    "PersistenceError",
    "PersistenceGateway",
    "RetryNotDueError",
    "select_executor",
]
