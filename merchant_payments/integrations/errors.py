"""Error types raised by the Daraja integration."""
from enum import Enum
from typing import Any, Dict, Optional


class DarajaErrorType(Enum):
    """Classification of Daraja failures."""

    REJECTED = "rejected"  # Gateway answered and said no
    UNREACHABLE = "unreachable"  # Timeout, connection error, 5xx, token failure
    CIRCUIT_OPEN = "circuit_open"  # Failing fast without calling the gateway


class DarajaError(Exception):
    """Base exception for Daraja-related errors."""

    def __init__(
        self,
        message: str,
        error_type: DarajaErrorType,
        status_code: Optional[int] = None,
        response_body: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Daraja error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status returned by the gateway, if any
            response_body: Parsed gateway response, if any
            original_error: Underlying exception
        """
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.response_body = response_body
        self.original_error = original_error

    @property
    def is_rejection(self) -> bool:
        return self.error_type == DarajaErrorType.REJECTED
