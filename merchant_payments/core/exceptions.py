"""
Exception taxonomy for payment initiation and lookup.

Each error carries a stable `kind` (for client handling), a message that is
safe to show to the caller, and the HTTP status the API maps it to.
Callback reconciliation never lets any of these escape to the gateway.
"""

from typing import Any, Dict


class PaymentError(Exception):
    """
    Base exception for all payment errors.

    Every exception includes:
    - Kind (stable identifier for clients)
    - Message (safe to show to users)
    - HTTP status code (for API responses)
    """

    kind = "PaymentError"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {"kind": self.kind, "message": self.message}


class InvalidInputError(PaymentError):
    """Amount or phone number failed validation."""

    kind = "InvalidInput"
    http_status = 400


class MerchantNotFoundError(PaymentError):
    """Merchant id does not resolve to a registered merchant."""

    kind = "MerchantNotFound"
    http_status = 404

    def __init__(self, merchant_id: str, **context: Any):
        super().__init__(f"Merchant not found: {merchant_id}", merchant_id=merchant_id, **context)
        self.merchant_id = merchant_id


class GatewayRejectedError(PaymentError):
    """
    Gateway answered but declined the request.

    The gateway's own message is surfaced to the caller.
    """

    kind = "GatewayRejected"
    http_status = 502


class GatewayUnreachableError(PaymentError):
    """Network failure, timeout, 5xx, open circuit or token failure."""

    kind = "GatewayUnreachable"
    http_status = 503


class TransactionNotFoundError(PaymentError):
    """No transaction matches the given id or correlation id."""

    kind = "NotFound"
    http_status = 404


class PersistenceError(PaymentError):
    """Database write failed."""

    kind = "PersistenceError"
    http_status = 500


class AuthenticationError(PaymentError):
    """Missing or unknown merchant/admin credential."""

    kind = "Unauthorized"
    http_status = 401


class ForbiddenError(PaymentError):
    """Credential is valid but does not own the resource."""

    kind = "Forbidden"
    http_status = 403
