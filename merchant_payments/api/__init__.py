"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CustomerPaymentRequest,
    InitiationResponse,
    PaymentRequest,
    StkPushRequest,
    TransactionStatusResponse,
)

__all__ = [
    "app",
    "create_app",
    "CustomerPaymentRequest",
    "InitiationResponse",
    "PaymentRequest",
    "StkPushRequest",
    "TransactionStatusResponse",
]
