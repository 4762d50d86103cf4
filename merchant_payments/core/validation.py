"""Input validation and gateway field builders for STK push requests."""
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any

from merchant_payments.core.exceptions import InvalidInputError

COUNTRY_CODE = "254"
MSISDN_LENGTH = 12
ACCOUNT_REFERENCE_MAX = 12
DESCRIPTION_MAX = 13
CENTS = Decimal("0.01")
# Numeric(12, 2)
MAX_AMOUNT = Decimal("9999999999.99")

_NON_DIGITS = re.compile(r"\D")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def normalize_phone(raw: Any) -> str:
    """
    Normalize a Kenyan mobile number to `254XXXXXXXXX`.

    Non-digits are stripped, a leading 0 becomes 254, and bare 9-digit
    numbers starting with 7 or 1 get the country code prepended.

    Raises:
        InvalidInputError: If the result is not 12 digits starting with 254
    """
    if raw is None:
        raise InvalidInputError("Phone number is required")

    digits = _NON_DIGITS.sub("", str(raw))
    if digits.startswith("0"):
        digits = COUNTRY_CODE + digits[1:]
    elif len(digits) == 9 and digits[0] in ("7", "1"):
        digits = COUNTRY_CODE + digits

    if len(digits) != MSISDN_LENGTH or not digits.startswith(COUNTRY_CODE):
        raise InvalidInputError(
            "Invalid phone number format. Must be 254XXXXXXXXX", phone_number=str(raw)
        )
    return digits


def validate_amount(raw: Any) -> Decimal:
    """
    Parse a payment amount into a positive Decimal with two places.

    The positivity and range checks run on the rounded value, so anything
    that rounds to 0.00 is rejected.

    Raises:
        InvalidInputError: If the amount is missing, not numeric, not
            positive or too large to store
    """
    if raw is None or isinstance(raw, bool):
        raise InvalidInputError("Amount must be a positive number")
    try:
        amount = Decimal(str(raw)).quantize(CENTS)
    except (InvalidOperation, ValueError):
        raise InvalidInputError("Amount must be a positive number", amount=str(raw))

    if not amount.is_finite() or amount <= 0:
        raise InvalidInputError("Amount must be a positive number", amount=str(raw))
    if amount > MAX_AMOUNT:
        raise InvalidInputError(f"Amount must not exceed {MAX_AMOUNT}", amount=str(raw))
    return amount


def gateway_amount(amount: Decimal) -> int:
    """Daraja only accepts whole shillings; round up so the merchant is never short."""
    return int(math.ceil(amount))


def build_account_reference(merchant_name: str, timestamp: str) -> str:
    """Up to 6 alphanumerics of the merchant name plus the last 6 timestamp digits."""
    prefix = _NON_ALNUM.sub("", merchant_name or "").upper()[:6] or "PAY"
    return f"{prefix}{timestamp[-6:]}"[:ACCOUNT_REFERENCE_MAX]


def build_description(merchant_name: str, timestamp: str) -> str:
    """Up to 8 characters of the merchant name, a space and the last 4 timestamp digits."""
    name = " ".join((merchant_name or "").split())[:8].strip() or "Payment"
    return f"{name} {timestamp[-4:]}"[:DESCRIPTION_MAX]
