"""Database package for merchant payments."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    Base,
    Merchant,
    OrphanCallback,
    Transaction,
    TransactionEvent,
)
from .repository import (
    MerchantRepository,
    OrphanCallbackRepository,
    TransactionRepository,
)

__all__ = [
    "Base",
    "Merchant",
    "Transaction",
    "TransactionEvent",
    "OrphanCallback",
    "MerchantRepository",
    "TransactionRepository",
    "OrphanCallbackRepository",
    "get_db",
    "get_session_factory",
    "init_db",
]
