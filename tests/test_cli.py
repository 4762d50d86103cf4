"""
Tests for the operational CLI.
"""
from typing import Any
from unittest.mock import AsyncMock

import pytest
from typer.testing import CliRunner

from merchant_payments.cli import app
from merchant_payments.integrations.errors import DarajaError, DarajaErrorType

runner = CliRunner()


class TestCli:
    """Command-line entry points."""

    @pytest.mark.unit
    def test_check_token_success(self, mocker: Any) -> None:
        mocker.patch(
            "merchant_payments.cli.DarajaTokenProvider.get_access_token",
            new_callable=AsyncMock,
            return_value="tok-cli-0123456789",
        )

        result = runner.invoke(app, ["check-token"])

        assert result.exit_code == 0
        assert "Daraja API connection successful" in result.output
        assert "tok-cli-01..." in result.output

    @pytest.mark.unit
    def test_check_token_failure(self, mocker: Any) -> None:
        mocker.patch(
            "merchant_payments.cli.DarajaTokenProvider.get_access_token",
            new_callable=AsyncMock,
            side_effect=DarajaError("Access token request failed", DarajaErrorType.UNREACHABLE),
        )

        result = runner.invoke(app, ["check-token"])

        assert result.exit_code == 1
        assert "Access token request failed" in result.output

    @pytest.mark.unit
    def test_init_db(self) -> None:
        result = runner.invoke(app, ["init-db"])

        assert result.exit_code == 0
        assert "Database tables are ready" in result.output

    @pytest.mark.unit
    def test_backfill_on_empty_database(self, mocker: Any) -> None:
        backfill = mocker.patch(
            "merchant_payments.cli.TransactionRepository.backfill_correlation_ids",
            new_callable=AsyncMock,
            return_value=0,
        )

        result = runner.invoke(app, ["backfill-correlation-ids", "--batch-size", "100"])

        assert result.exit_code == 0
        assert "0 transaction(s)" in result.output
        backfill.assert_awaited_once_with(100)
