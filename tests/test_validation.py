"""
Unit tests for phone normalization, amount parsing and STK field builders.
"""
from decimal import Decimal

import pytest

from merchant_payments.core.exceptions import InvalidInputError
from merchant_payments.core.validation import (
    build_account_reference,
    build_description,
    gateway_amount,
    normalize_phone,
    validate_amount,
)


class TestPhoneNormalization:
    """Kenyan MSISDN normalization."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("0712345678", "254712345678"),
            ("712345678", "254712345678"),
            ("254712345678", "254712345678"),
            ("+254 712 345 678", "254712345678"),
            ("0712-345-678", "254712345678"),
            ("0110123456", "254110123456"),
            ("110123456", "254110123456"),
            (712345678, "254712345678"),
        ],
    )
    def test_accepted_formats(self, raw: object, expected: str) -> None:
        assert normalize_phone(raw) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw",
        ["12345", "", "abc", "25571234567", "07123456789", "812345678", None],
    )
    def test_rejected_numbers(self, raw: object) -> None:
        with pytest.raises(InvalidInputError) as exc_info:
            normalize_phone(raw)
        assert exc_info.value.kind == "InvalidInput"

    @pytest.mark.unit
    def test_already_normalized_is_unchanged(self) -> None:
        phone = "254712345678"
        assert normalize_phone(normalize_phone(phone)) == phone


class TestAmountValidation:
    """Payment amount parsing."""

    @pytest.mark.unit
    def test_integer_amount(self) -> None:
        assert validate_amount(50) == Decimal("50.00")

    @pytest.mark.unit
    def test_string_amount(self) -> None:
        assert validate_amount("99.5") == Decimal("99.50")

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", [0, -10, "-1", "abc", None, True, float("nan"), "inf"])
    def test_invalid_amounts(self, raw: object) -> None:
        with pytest.raises(InvalidInputError, match="Amount must be a positive number"):
            validate_amount(raw)

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["0.001", "0.004", 0.001])
    def test_amounts_rounding_to_zero_are_rejected(self, raw: object) -> None:
        with pytest.raises(InvalidInputError, match="Amount must be a positive number"):
            validate_amount(raw)

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["1e30", "10000000000", 10_000_000_000.5])
    def test_amounts_too_large_to_store_are_rejected(self, raw: object) -> None:
        with pytest.raises(InvalidInputError):
            validate_amount(raw)

    @pytest.mark.unit
    def test_largest_storable_amount(self) -> None:
        assert validate_amount("9999999999.99") == Decimal("9999999999.99")

    @pytest.mark.unit
    def test_gateway_amount_rounds_up(self) -> None:
        assert gateway_amount(Decimal("10.01")) == 11
        assert gateway_amount(Decimal("10.00")) == 10


class TestGatewayFields:
    """AccountReference and TransactionDesc builders."""

    @pytest.mark.unit
    def test_account_reference_fits_limit(self) -> None:
        reference = build_account_reference("Mama Mboga Shop", "20261019143015")
        assert reference == "MAMAMB143015"
        assert len(reference) <= 12

    @pytest.mark.unit
    def test_account_reference_without_name(self) -> None:
        assert build_account_reference("", "20261019143015") == "PAY143015"

    @pytest.mark.unit
    def test_description_fits_limit(self) -> None:
        description = build_description("Mama Mboga Shop", "20261019143015")
        assert description == "Mama Mbo 3015"
        assert len(description) <= 13

    @pytest.mark.unit
    def test_description_without_name(self) -> None:
        assert build_description("", "20261019143015") == "Payment 3015"
