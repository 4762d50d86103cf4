"""SQLAlchemy database models for merchant payments."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Merchant(Base):
    """
    Merchant profiles.

    The primary key is the merchant's identity-provider id. Merchants
    authenticate with an API key whose SHA-256 digest is stored here.
    """

    __tablename__ = "merchants"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    shortcode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    account_type: Mapped[str] = mapped_column(String(20), nullable=False, default="paybill")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    api_key_hash: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("account_type IN ('paybill', 'till')", name="valid_account_type"),
    )

    def __repr__(self) -> str:
        """String representation of Merchant."""
        return f"<Merchant(id={self.id}, name={self.name}, status={self.status})>"


class Transaction(Base):
    """
    Payment transactions.

    Created pending once the gateway accepts an STK push and moved to a
    terminal status exactly once by callback reconciliation.
    `checkout_request_id` is the canonical correlation id; older rows only
    carry it inside `gateway_response`.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    guest_merchant_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    guest_merchant_info: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    checkout_request_id: Mapped[str | None] = mapped_column(
        String(100), unique=True, nullable=True
    )
    merchant_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(15), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    account_reference: Mapped[str | None] = mapped_column(String(12), nullable=True)
    description: Mapped[str | None] = mapped_column(String(13), nullable=True)
    payment_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default="merchant_initiated"
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="merchant_dashboard")
    result_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[str | None] = mapped_column(Text, nullable=True)
    receipt_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    transaction_date: Mapped[str | None] = mapped_column(String(14), nullable=True)
    gateway_response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    raw_gateway_result: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )
    callback_received_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'success', 'failed', 'cancelled', 'error')",
            name="valid_status",
        ),
        Index("idx_transactions_merchant_created", "merchant_id", "created_at"),
        Index("idx_transactions_guest_created", "guest_merchant_id", "created_at"),
    )

    @property
    def is_guest(self) -> bool:
        return self.merchant_id is None

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(id={self.id}, checkout_request_id={self.checkout_request_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class TransactionEvent(Base):
    """
    Transaction audit trail.

    One row per creation, reconciliation attempt and manual override.
    Immutable once written.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (Index("idx_transaction_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of TransactionEvent."""
        return (
            f"<TransactionEvent(id={self.id}, transaction_id={self.transaction_id}, "
            f"type={self.event_type})>"
        )


class OrphanCallback(Base):
    """
    Callbacks whose correlation id matched no transaction.

    Diagnostic trail for manual inspection. Write-once.
    """

    __tablename__ = "orphan_callbacks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    checkout_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False, default="transaction_not_found")
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        """String representation of OrphanCallback."""
        return (
            f"<OrphanCallback(id={self.id}, checkout_request_id={self.checkout_request_id}, "
            f"reason={self.reason})>"
        )
