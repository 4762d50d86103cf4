"""Core payment request and reconciliation logic."""
from .exceptions import (
    GatewayRejectedError,
    GatewayUnreachableError,
    InvalidInputError,
    MerchantNotFoundError,
    PaymentError,
    PersistenceError,
    TransactionNotFoundError,
)
from .status import TERMINAL_STATUSES, TransactionStatus, status_for_result_code

# Services live in their own modules (payment_initiator, reconciliation,
# transactions, analytics); importing them here would cycle through
# merchant_payments.integrations.
__all__ = [
    "GatewayRejectedError",
    "GatewayUnreachableError",
    "InvalidInputError",
    "MerchantNotFoundError",
    "PaymentError",
    "PersistenceError",
    "TERMINAL_STATUSES",
    "TransactionNotFoundError",
    "TransactionStatus",
    "status_for_result_code",
]
