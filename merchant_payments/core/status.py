"""Transaction statuses and the gateway result-code mapping."""
from enum import Enum


class TransactionStatus(str, Enum):
    """Lifecycle states of a payment request."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    # Only reachable through a manual override
    ERROR = "error"


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.SUCCESS, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
)

RESULT_CODE_SUCCESS = 0
RESULT_CODE_CANCELLED_BY_USER = 1032


def status_for_result_code(result_code: int) -> TransactionStatus:
    """
    Map an STK callback ResultCode to the terminal status it implies.

    0 is a completed payment, 1032 means the payer dismissed the prompt,
    and every other code is a failure.
    """
    if result_code == RESULT_CODE_SUCCESS:
        return TransactionStatus.SUCCESS
    if result_code == RESULT_CODE_CANCELLED_BY_USER:
        return TransactionStatus.CANCELLED
    return TransactionStatus.FAILED
