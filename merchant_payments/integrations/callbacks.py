"""
STK push callback parsing.

Turns the gateway's `{"Body": {"stkCallback": {...}}}` envelope into a
`StkCallback`. Anything that cannot be correlated is rejected with
`MalformedCallbackError` so the reconciler can acknowledge and drop it.
"""
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import structlog

from merchant_payments.core.status import TransactionStatus, status_for_result_code

logger = structlog.get_logger(__name__)


class MalformedCallbackError(Exception):
    """Raised when a callback envelope is missing required fields."""

    def __init__(self, message: str, checkout_request_id: Optional[str] = None):
        super().__init__(message)
        self.checkout_request_id = checkout_request_id


@dataclass
class StkCallback:
    """A parsed STK callback."""

    checkout_request_id: str
    result_code: int
    result_desc: Optional[str]
    merchant_request_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> TransactionStatus:
        return status_for_result_code(self.result_code)

    @property
    def receipt_number(self) -> Optional[str]:
        value = self.metadata.get("MpesaReceiptNumber")
        return str(value) if value is not None else None

    @property
    def amount(self) -> Optional[Decimal]:
        value = self.metadata.get("Amount")
        if value is None:
            return None
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
        return amount if amount.is_finite() and amount > 0 else None

    @property
    def phone_number(self) -> Optional[str]:
        value = self.metadata.get("PhoneNumber")
        return str(value) if value is not None else None

    @property
    def transaction_date(self) -> Optional[str]:
        value = self.metadata.get("TransactionDate")
        return str(value) if value is not None else None


def flatten_metadata(stk_callback: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten `CallbackMetadata.Item` name/value pairs into a dict."""
    container = stk_callback.get("CallbackMetadata")
    if not isinstance(container, dict):
        return {}
    items = container.get("Item")
    if not isinstance(items, list):
        return {}

    flattened: Dict[str, Any] = {}
    for item in items:
        if not isinstance(item, dict) or "Name" not in item:
            continue
        # Daraja omits Value for some items (e.g. Balance)
        if "Value" in item:
            flattened[str(item["Name"])] = item["Value"]
    return flattened


def _result_code(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def parse_stk_callback(payload: Any) -> StkCallback:
    """
    Parse a raw callback body.

    Raises:
        MalformedCallbackError: If the envelope, correlation id or result
            code is missing or unusable
    """
    if not isinstance(payload, dict):
        raise MalformedCallbackError("Callback body is not a JSON object")

    body = payload.get("Body")
    stk_callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk_callback, dict):
        raise MalformedCallbackError("Missing Body.stkCallback")

    checkout_request_id = stk_callback.get("CheckoutRequestID")
    if not isinstance(checkout_request_id, str) or not checkout_request_id.strip():
        raise MalformedCallbackError("Missing CheckoutRequestID")
    checkout_request_id = checkout_request_id.strip()

    result_code = _result_code(stk_callback.get("ResultCode"))
    if result_code is None:
        raise MalformedCallbackError(
            "Missing or non-numeric ResultCode", checkout_request_id=checkout_request_id
        )

    result_desc = stk_callback.get("ResultDesc")
    merchant_request_id = stk_callback.get("MerchantRequestID")
    return StkCallback(
        checkout_request_id=checkout_request_id,
        result_code=result_code,
        result_desc=str(result_desc) if result_desc is not None else None,
        merchant_request_id=str(merchant_request_id) if merchant_request_id is not None else None,
        metadata=flatten_metadata(stk_callback),
        raw=stk_callback,
    )
