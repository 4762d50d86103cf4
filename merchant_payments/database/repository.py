"""
Persistence operations for merchants, transactions and callbacks.

Thin wrappers over SQLAlchemy statements so the core services never build
queries themselves. Every method takes the caller's session and leaves
commit/rollback to the caller.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_payments.database.models import (
    Merchant,
    OrphanCallback,
    Transaction,
    TransactionEvent,
)

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MerchantRepository:
    """Merchant lookups and registration."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, merchant_id: str) -> Optional[Merchant]:
        return await self.session.get(Merchant, merchant_id)

    async def get_by_api_key_hash(self, api_key_hash: str) -> Optional[Merchant]:
        stmt = select(Merchant).where(
            Merchant.api_key_hash == api_key_hash,
            Merchant.status == "active",
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **fields: Any) -> Merchant:
        merchant = Merchant(**fields)
        self.session.add(merchant)
        await self.session.flush()
        return merchant


class TransactionRepository:
    """
    Transaction persistence.

    The terminal status transition goes through `transition_from_pending`,
    a single conditional UPDATE, so concurrent callbacks for the same
    correlation id cannot both win.
    """

    def __init__(self, session: AsyncSession, legacy_lookup: bool = True):
        self.session = session
        self.legacy_lookup = legacy_lookup

    async def add(self, transaction: Transaction) -> Transaction:
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def get(self, transaction_id: uuid.UUID) -> Optional[Transaction]:
        return await self.session.get(Transaction, transaction_id)

    async def find_by_correlation_id(self, correlation_id: str) -> Optional[Transaction]:
        """
        Find a transaction by gateway correlation id.

        Searches the canonical `checkout_request_id` column first, then the
        id embedded in the stored initiation response for rows written
        before the column existed. First match wins.
        """
        stmt = select(Transaction).where(Transaction.checkout_request_id == correlation_id).limit(1)
        result = await self.session.execute(stmt)
        transaction = result.scalar_one_or_none()
        if transaction is not None or not self.legacy_lookup:
            return transaction

        legacy_stmt = (
            select(Transaction)
            .where(Transaction.gateway_response["CheckoutRequestID"].as_string() == correlation_id)
            .order_by(Transaction.created_at)
            .limit(1)
        )
        result = await self.session.execute(legacy_stmt)
        transaction = result.scalar_one_or_none()
        if transaction is not None:
            logger.info(
                "transaction_found_via_legacy_correlation_field",
                transaction_id=str(transaction.id),
                correlation_id=correlation_id,
            )
        return transaction

    async def transition_from_pending(
        self, transaction_id: uuid.UUID, values: Dict[str, Any]
    ) -> bool:
        """
        Apply `values` only if the row is still pending.

        Returns:
            bool: True if this call performed the transition
        """
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == "pending")
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def current_status(self, transaction_id: uuid.UUID) -> Optional[str]:
        """Read the stored status directly, bypassing the identity map."""
        stmt = select(Transaction.status).where(Transaction.id == transaction_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def touch(self, transaction_id: uuid.UUID) -> None:
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def set_status(
        self, transaction_id: uuid.UUID, status: str
    ) -> None:
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def record_event(
        self,
        transaction_id: uuid.UUID,
        event_type: str,
        event_data: Dict[str, Any],
    ) -> None:
        """Append an audit event for a transaction."""
        self.session.add(
            TransactionEvent(
                transaction_id=transaction_id,
                event_type=event_type,
                event_data=event_data,
                created_at=utcnow(),
            )
        )
        await self.session.flush()

    async def events_for(self, transaction_id: uuid.UUID) -> Sequence[TransactionEvent]:
        stmt = (
            select(TransactionEvent)
            .where(TransactionEvent.transaction_id == transaction_id)
            .order_by(TransactionEvent.id)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_for_merchant(
        self,
        merchant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[str] = None,
        source: Optional[str] = None,
        include_guest: bool = True,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        """
        Merchant transactions, newest first.

        Guest transactions whose QR payload named this merchant are included
        unless `include_guest` is false.
        """
        owner = Transaction.merchant_id == merchant_id
        if include_guest:
            owner = or_(owner, Transaction.guest_merchant_id == merchant_id)

        stmt = select(Transaction).where(owner)
        if start is not None:
            stmt = stmt.where(Transaction.created_at >= start)
        if end is not None:
            stmt = stmt.where(Transaction.created_at <= end)
        if status and status != "all":
            stmt = stmt.where(Transaction.status == status)
        if source:
            stmt = stmt.where(Transaction.source == source)
        stmt = stmt.order_by(Transaction.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def backfill_correlation_ids(self, batch_size: int = 500) -> int:
        """
        Copy legacy correlation ids into `checkout_request_id`.

        Only rows whose stored initiation response carries a
        `CheckoutRequestID` are selected, so every fetched row is updated
        and drops out of the next batch.

        Returns:
            int: Number of rows updated
        """
        legacy_id = Transaction.gateway_response["CheckoutRequestID"].as_string()
        stmt = (
            select(Transaction)
            .where(
                Transaction.checkout_request_id.is_(None),
                legacy_id.is_not(None),
                legacy_id != "",
            )
            .order_by(Transaction.created_at, Transaction.id)
            .limit(batch_size)
        )
        updated = 0
        while True:
            result = await self.session.execute(stmt)
            rows = result.scalars().all()
            for transaction in rows:
                legacy_value = transaction.gateway_response["CheckoutRequestID"]
                transaction.checkout_request_id = str(legacy_value)
            updated += len(rows)
            await self.session.flush()
            if len(rows) < batch_size:
                break
        return updated


class OrphanCallbackRepository:
    """Write-once store for callbacks that matched no transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self,
        checkout_request_id: Optional[str],
        payload: Dict[str, Any],
        reason: str = "transaction_not_found",
    ) -> OrphanCallback:
        orphan = OrphanCallback(
            checkout_request_id=checkout_request_id,
            payload=payload,
            reason=reason,
            received_at=utcnow(),
        )
        self.session.add(orphan)
        await self.session.flush()
        return orphan

    async def count_for(self, checkout_request_id: str) -> int:
        stmt = select(OrphanCallback).where(
            OrphanCallback.checkout_request_id == checkout_request_id
        )
        result = await self.session.execute(stmt)
        return len(result.scalars().all())
