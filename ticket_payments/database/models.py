"""SQLAlchemy database models for ticket payment transactions."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Transaction(Base):
    """
    One payment attempt, M-Pesa or Stripe.

    ``request_id`` is the provider-issued correlation id (M-Pesa
    CheckoutRequestID or Stripe checkout session id). It is written once at
    creation and never changes. Terminal rows are kept as the audit trail.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # Correlation ids
    request_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    merchant_request_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    payment_intent_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    provider_reference: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )

    # Amounts: whole KES for M-Pesa, minor units (cents) for Stripe
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refund_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Customer snapshot taken at initiation
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Commercial context
    ticket_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ticket_label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    promo_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    result_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    result_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    # Bumped on every UPDATE; a write against a stale read matches no row
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed', 'refunded', 'cancelled')",
            name="valid_status",
        ),
        CheckConstraint("provider IN ('mpesa', 'stripe', 'free')", name="valid_provider"),
        Index("idx_transactions_status_created", "status", "created_at"),
        Index("idx_transactions_email_status", "customer_email", "status"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> Dict[str, Any]:
        """Serialise for API responses."""
        return {
            "id": str(self.id),
            "provider": self.provider,
            "request_id": self.request_id,
            "merchant_request_id": self.merchant_request_id,
            "payment_intent_id": self.payment_intent_id,
            "provider_reference": self.provider_reference,
            "amount": self.amount,
            "currency": self.currency,
            "discount_amount": self.discount_amount,
            "refund_amount": self.refund_amount,
            "customer_email": self.customer_email,
            "customer": self.customer,
            "phone_number": self.phone_number,
            "ticket_id": self.ticket_id,
            "ticket_label": self.ticket_label,
            "promo_code": self.promo_code,
            "status": self.status,
            "result_code": self.result_code,
            "result_description": self.result_description,
            "settled_at": _iso(self.settled_at),
            "refunded_at": _iso(self.refunded_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(id={self.id}, provider={self.provider}, "
            f"request_id={self.request_id}, status={self.status})>"
        )


class TransactionEvent(Base):
    """
    Status change audit trail.

    One row per applied transition, written in the same database
    transaction as the status change. Immutable once written.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    transaction_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )

    def __repr__(self) -> str:
        """String representation of TransactionEvent."""
        return (
            f"<TransactionEvent(id={self.id}, transaction_id={self.transaction_id}, "
            f"{self.from_status}->{self.to_status})>"
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
