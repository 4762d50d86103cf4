"""External integrations for M-Pesa payments."""
from .callbacks import MalformedCallbackError, StkCallback, parse_stk_callback
from .daraja_client import CircuitBreaker, DarajaClient
from .errors import DarajaError, DarajaErrorType
from .token_provider import AccessTokenProvider, DarajaTokenProvider

__all__ = [
    "AccessTokenProvider",
    "CircuitBreaker",
    "DarajaClient",
    "DarajaError",
    "DarajaErrorType",
    "DarajaTokenProvider",
    "MalformedCallbackError",
    "StkCallback",
    "parse_stk_callback",
]
