"""Transaction queries, manual status overrides and correlation-id backfill."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_payments.core.exceptions import (
    ForbiddenError,
    InvalidInputError,
    TransactionNotFoundError,
)
from merchant_payments.core.status import TransactionStatus
from merchant_payments.database.models import Transaction
from merchant_payments.database.repository import TransactionRepository

logger = structlog.get_logger(__name__)

# Status moves a merchant may make by hand. Reopening a transaction or
# rewriting a reconciled outcome is left to administrators.
MERCHANT_OVERRIDES = {
    TransactionStatus.PENDING.value: frozenset(
        s.value for s in TransactionStatus if s != TransactionStatus.PENDING
    ),
    TransactionStatus.SUCCESS.value: frozenset({TransactionStatus.ERROR.value}),
    TransactionStatus.FAILED.value: frozenset({TransactionStatus.ERROR.value}),
    TransactionStatus.CANCELLED.value: frozenset({TransactionStatus.ERROR.value}),
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they were written as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_transaction(transaction: Transaction) -> Dict[str, Any]:
    """API representation of a transaction."""
    return {
        "id": str(transaction.id),
        "merchant_id": transaction.merchant_id,
        "guest_merchant_id": transaction.guest_merchant_id,
        "guest_merchant_info": transaction.guest_merchant_info,
        "is_guest": transaction.is_guest,
        "correlation_id": transaction.checkout_request_id,
        "merchant_request_id": transaction.merchant_request_id,
        "amount": _money(transaction.amount),
        "phone_number": transaction.phone_number,
        "status": transaction.status,
        "receipt_number": transaction.receipt_number,
        "result_code": transaction.result_code,
        "result_desc": transaction.result_desc,
        "transaction_date": transaction.transaction_date,
        "account_reference": transaction.account_reference,
        "description": transaction.description,
        "payment_type": transaction.payment_type,
        "source": transaction.source,
        "created_at": _iso(transaction.created_at),
        "updated_at": _iso(transaction.updated_at),
        "callback_received_at": _iso(transaction.callback_received_at),
    }


def serialize_status(transaction: Transaction) -> Dict[str, Any]:
    """Public status-poll view; leaves out merchant and payer details."""
    return {
        "transaction_id": str(transaction.id),
        "correlation_id": transaction.checkout_request_id
        or (transaction.gateway_response or {}).get("CheckoutRequestID"),
        "status": transaction.status,
        "amount": _money(transaction.amount),
        "receipt_number": transaction.receipt_number,
        "result_desc": transaction.result_desc,
        "updated_at": _iso(transaction.updated_at),
    }


class TransactionService:
    """Read and administrative operations on transactions."""

    def __init__(self, db: AsyncSession, legacy_lookup: bool = True):
        self.db = db
        self.repository = TransactionRepository(db, legacy_lookup=legacy_lookup)

    async def find_by_correlation_id(self, correlation_id: str) -> Transaction:
        """
        Look up a transaction by gateway correlation id.

        Raises:
            TransactionNotFoundError: If no transaction matches
        """
        if not correlation_id or not correlation_id.strip():
            raise InvalidInputError("Correlation id is required")
        transaction = await self.repository.find_by_correlation_id(correlation_id.strip())
        if transaction is None:
            raise TransactionNotFoundError(
                f"No transaction for correlation id {correlation_id}",
                correlation_id=correlation_id,
            )
        return transaction

    async def _get(self, transaction_id: str) -> Transaction:
        try:
            parsed_id = uuid.UUID(str(transaction_id))
        except ValueError:
            raise TransactionNotFoundError(f"Transaction not found: {transaction_id}")

        transaction = await self.repository.get(parsed_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction not found: {transaction_id}")
        return transaction

    async def get_for_merchant(self, transaction_id: str, merchant_id: str) -> Transaction:
        """
        Fetch a transaction owned by (or guest-attributed to) a merchant.

        Raises:
            TransactionNotFoundError: Unknown id
            ForbiddenError: Transaction belongs to another merchant
        """
        transaction = await self._get(transaction_id)
        if merchant_id not in (transaction.merchant_id, transaction.guest_merchant_id):
            raise ForbiddenError("Access denied")
        return transaction

    async def list_for_merchant(self, merchant_id: str, **filters: Any) -> List[Transaction]:
        return await self.repository.list_for_merchant(merchant_id, **filters)

    async def override_status(
        self,
        transaction_id: str,
        merchant_id: Optional[str],
        status: str,
        reason: Optional[str] = None,
    ) -> Transaction:
        """
        Manually set a transaction's status.

        This is the only path into `error`, and the only one that may move a
        transaction out of a terminal status. With a `merchant_id` the
        transaction must belong to that merchant and only the moves in
        `MERCHANT_OVERRIDES` are allowed; without one (administrators) any
        move is. Every override is recorded in the audit trail.

        Raises:
            InvalidInputError: Unknown status
            ForbiddenError: Move not open to merchants, or not their transaction
        """
        try:
            new_status = TransactionStatus(status)
        except ValueError:
            raise InvalidInputError(
                f"Invalid status. Must be one of: {[s.value for s in TransactionStatus]}"
            )

        if merchant_id is None:
            transaction = await self._get(transaction_id)
        else:
            transaction = await self.get_for_merchant(transaction_id, merchant_id)
        previous = transaction.status

        allowed = MERCHANT_OVERRIDES.get(previous, frozenset())
        if merchant_id is not None and new_status.value not in allowed:
            raise ForbiddenError(
                f"Cannot move a {previous} transaction to {new_status.value}; "
                "this change needs an administrator"
            )

        await self.repository.set_status(transaction.id, new_status.value)
        await self.repository.record_event(
            transaction.id,
            "transaction.status_overridden",
            {
                "from_status": previous,
                "to_status": new_status.value,
                "reason": reason or "Manual update",
                "updated_by": merchant_id or "admin",
            },
        )
        await self.db.commit()
        await self.db.refresh(transaction)

        logger.info(
            "transaction_status_overridden",
            transaction_id=str(transaction.id),
            updated_by=merchant_id or "admin",
            from_status=previous,
            to_status=new_status.value,
        )
        return transaction

    async def backfill_correlation_ids(self) -> int:
        """Copy legacy correlation ids into the canonical column."""
        updated = await self.repository.backfill_correlation_ids()
        await self.db.commit()
        logger.info("correlation_id_backfill_completed", updated=updated)
        return updated
